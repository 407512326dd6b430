"""HTML bodies for billing and giving notifications"""
from html import escape
from typing import Optional


def _wrap(title: str, body_html: str) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; color: #0f172a; max-width: 600px;">
      <h2 style="margin: 0 0 12px;">{escape(title)}</h2>
      {body_html}
      <p style="font-size: 12px; color: #64748b; margin-top: 24px;">FaithFlow AI</p>
    </div>
    """


def render_welcome_email(church_name: str, admin_url: str) -> str:
    return _wrap(
        f"Welcome to FaithFlow AI, {church_name}",
        f"""
        <p>Your subscription is active. Everything is ready in your admin console.</p>
        <p><a href="{escape(admin_url)}">Open the admin console</a></p>
        """
    )


def render_dunning_email(tenant_name: str, plan_code: str, billing_url: str, period_end: Optional[str]) -> str:
    due_line = f"<p>The billing period ended on {escape(period_end)}.</p>" if period_end else ""
    return _wrap(
        "Payment issue with your subscription",
        f"""
        <p>We could not collect the latest payment for <strong>{escape(tenant_name)}</strong>
        on the <strong>{escape(plan_code)}</strong> plan.</p>
        {due_line}
        <p>Please update your payment method to avoid a service interruption.</p>
        <p><a href="{escape(billing_url)}">Update billing details</a></p>
        """
    )


def render_trial_ending_email(tenant_name: str, plan_code: str, trial_ends_on: str, billing_url: str) -> str:
    return _wrap(
        "Your trial is ending soon",
        f"""
        <p>The <strong>{escape(plan_code)}</strong> trial for <strong>{escape(tenant_name)}</strong>
        ends on {escape(trial_ends_on)}.</p>
        <p><a href="{escape(billing_url)}">Choose a plan</a> to keep your features.</p>
        """
    )


def render_dispute_alert_email(
    church_name: str,
    provider_ref: str,
    amount: str,
    status: str,
    due_on: str,
    stage_label: str,
    disputes_url: str
) -> str:
    return _wrap(
        f"Dispute evidence {stage_label}",
        f"""
        <p>A donation dispute for <strong>{escape(church_name)}</strong> needs attention.</p>
        <ul>
          <li>Dispute: {escape(provider_ref)}</li>
          <li>Amount: {escape(amount)}</li>
          <li>Status: {escape(status)}</li>
          <li>Evidence due: {escape(due_on)}</li>
        </ul>
        <p><a href="{escape(disputes_url)}">Review the dispute</a></p>
        """
    )

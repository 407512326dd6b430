"""Provider webhook adapters.

Raw Stripe and Paystack event bodies are mapped here to a small set of frozen
dataclasses. Nothing downstream of this module reads provider JSON.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from faithflow.services.stripe_service import get_stripe_value, stripe_id
from faithflow.utils.currency import from_minor_units
from faithflow.utils.dates import from_timestamp, parse_iso_datetime

logger = logging.getLogger(__name__)


# ============================================================================
# NORMALIZED EVENTS
# ============================================================================

@dataclass(frozen=True)
class CheckoutCompleted:
    intent_reference: Optional[str]
    provider_ref: str
    payment_ref: Optional[str]
    mode: str
    subscription_ref: Optional[str]
    recurring_reference: Optional[str]
    is_anonymous: Optional[bool]


@dataclass(frozen=True)
class PaymentSucceeded:
    intent_reference: Optional[str]
    provider_ref: Optional[str]


@dataclass(frozen=True)
class PaymentFailed:
    intent_reference: Optional[str]
    provider_ref: Optional[str]


@dataclass(frozen=True)
class InvoicePaid:
    subscription_ref: Optional[str]
    invoice_ref: str
    amount: Decimal
    currency: str
    period_end: Optional[datetime]
    charged_at: Optional[datetime] = None
    customer_email: Optional[str] = None


@dataclass(frozen=True)
class RecurringChargeSucceeded:
    """A verified Paystack charge belonging to a recurring donation"""
    reference: str
    recurring_reference: Optional[str]
    subscription_ref: Optional[str]
    plan_ref: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    next_payment_at: Optional[datetime]
    is_anonymous: Optional[bool]
    customer_email: Optional[str] = None
    charged_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionActivated:
    subscription_ref: Optional[str]
    plan_ref: Optional[str]
    recurring_reference: Optional[str]
    next_payment_at: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionPaymentFailed:
    subscription_ref: Optional[str]
    plan_ref: Optional[str]


@dataclass(frozen=True)
class SubscriptionCanceled:
    subscription_ref: Optional[str]
    plan_ref: Optional[str]


@dataclass(frozen=True)
class RefundUpdated:
    provider_ref: str
    payment_ref: Optional[str]
    charge_ref: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    status: str
    reason: Optional[str]


@dataclass(frozen=True)
class DisputeUpdated:
    provider_ref: str
    payment_ref: Optional[str]
    charge_ref: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    status: str
    reason: Optional[str]
    evidence_due_by: Optional[datetime]


@dataclass(frozen=True)
class Ignored:
    event_type: str


ProviderEvent = Union[
    CheckoutCompleted, PaymentSucceeded, PaymentFailed, InvoicePaid,
    RecurringChargeSucceeded, SubscriptionActivated, SubscriptionPaymentFailed,
    SubscriptionCanceled, RefundUpdated, DisputeUpdated, Ignored,
]


def parse_anonymous_flag(value: Any) -> Optional[bool]:
    """Metadata flag: True/'true'/'1' are anonymous; None when absent"""
    if value is None:
        return None
    return value is True or str(value).strip().lower() in ("true", "1")


def _minor_amount(amount: Any, currency: Optional[str]) -> Optional[Decimal]:
    if amount in (None, "") or not currency:
        return None
    return from_minor_units(int(amount), currency)


def _upper(value: Optional[str]) -> Optional[str]:
    return value.upper() if value else None


# ============================================================================
# STRIPE
# ============================================================================

STRIPE_REFUND_EVENTS = ("refund.created", "refund.updated", "refund.failed", "charge.refund.updated")


def _stripe_invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = stripe_id(get_stripe_value(invoice, "subscription"))
    if subscription:
        return subscription
    # Newer API versions moved it under parent.subscription_details
    parent = get_stripe_value(invoice, "parent", {})
    details = get_stripe_value(parent, "subscription_details", {})
    return stripe_id(get_stripe_value(details, "subscription"))


def _stripe_invoice_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    lines = get_stripe_value(get_stripe_value(invoice, "lines", {}), "data", [])
    for line in lines:
        end = get_stripe_value(get_stripe_value(line, "period", {}), "end")
        if end:
            return from_timestamp(end)
    return None


def _stripe_refund(refund: Dict[str, Any], payment_ref: Optional[str], charge_ref: Optional[str]) -> RefundUpdated:
    currency = get_stripe_value(refund, "currency")
    return RefundUpdated(
        provider_ref=get_stripe_value(refund, "id"),
        payment_ref=payment_ref,
        charge_ref=charge_ref,
        amount=_minor_amount(get_stripe_value(refund, "amount"), currency),
        currency=_upper(currency),
        status=get_stripe_value(refund, "status", "unknown"),
        reason=get_stripe_value(refund, "reason"),
    )


def normalize_stripe_event(event: Dict[str, Any]) -> List[ProviderEvent]:
    """Map a verified Stripe event to normalized events (charge.refunded may yield several)"""
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = get_stripe_value(obj, "metadata", {}) or {}

    if event_type == "checkout.session.completed":
        mode = get_stripe_value(obj, "mode", "payment")
        client_reference = get_stripe_value(obj, "client_reference_id")
        if mode == "subscription":
            intent_reference = metadata.get("payment_intent_id")
            recurring_reference = metadata.get("recurring_donation_id") or client_reference
        else:
            intent_reference = client_reference or metadata.get("payment_intent_id")
            recurring_reference = metadata.get("recurring_donation_id")
        return [CheckoutCompleted(
            intent_reference=intent_reference,
            provider_ref=get_stripe_value(obj, "id"),
            payment_ref=stripe_id(get_stripe_value(obj, "payment_intent")),
            mode=mode,
            subscription_ref=stripe_id(get_stripe_value(obj, "subscription")),
            recurring_reference=recurring_reference,
            is_anonymous=parse_anonymous_flag(metadata.get("is_anonymous")),
        )]

    if event_type == "checkout.session.async_payment_failed":
        return [PaymentFailed(
            intent_reference=get_stripe_value(obj, "client_reference_id") or metadata.get("payment_intent_id"),
            provider_ref=get_stripe_value(obj, "id"),
        )]

    if event_type == "payment_intent.succeeded":
        return [PaymentSucceeded(intent_reference=metadata.get("payment_intent_id"), provider_ref=get_stripe_value(obj, "id"))]

    if event_type == "payment_intent.payment_failed":
        return [PaymentFailed(intent_reference=metadata.get("payment_intent_id"), provider_ref=get_stripe_value(obj, "id"))]

    if event_type == "invoice.paid":
        currency = get_stripe_value(obj, "currency", "usd")
        transitions = get_stripe_value(obj, "status_transitions", {})
        charged_at = get_stripe_value(transitions, "paid_at") or get_stripe_value(obj, "created")
        return [InvoicePaid(
            subscription_ref=_stripe_invoice_subscription(obj),
            invoice_ref=get_stripe_value(obj, "id"),
            amount=from_minor_units(get_stripe_value(obj, "amount_paid", 0), currency),
            currency=currency.upper(),
            period_end=_stripe_invoice_period_end(obj),
            charged_at=from_timestamp(charged_at),
            customer_email=get_stripe_value(obj, "customer_email"),
        )]

    if event_type == "invoice.payment_failed":
        return [SubscriptionPaymentFailed(subscription_ref=_stripe_invoice_subscription(obj), plan_ref=None)]

    if event_type == "customer.subscription.deleted":
        return [SubscriptionCanceled(subscription_ref=get_stripe_value(obj, "id"), plan_ref=None)]

    if event_type == "charge.refunded":
        payment_ref = stripe_id(get_stripe_value(obj, "payment_intent"))
        refunds = get_stripe_value(get_stripe_value(obj, "refunds", {}), "data", [])
        return [_stripe_refund(refund, payment_ref, get_stripe_value(obj, "id")) for refund in refunds]

    if event_type in STRIPE_REFUND_EVENTS:
        return [_stripe_refund(
            obj,
            stripe_id(get_stripe_value(obj, "payment_intent")),
            stripe_id(get_stripe_value(obj, "charge")),
        )]

    if event_type.startswith("charge.dispute."):
        currency = get_stripe_value(obj, "currency")
        evidence = get_stripe_value(obj, "evidence_details", {})
        return [DisputeUpdated(
            provider_ref=get_stripe_value(obj, "id"),
            payment_ref=stripe_id(get_stripe_value(obj, "payment_intent")),
            charge_ref=stripe_id(get_stripe_value(obj, "charge")),
            amount=_minor_amount(get_stripe_value(obj, "amount"), currency),
            currency=_upper(currency),
            status=get_stripe_value(obj, "status", "unknown"),
            reason=get_stripe_value(obj, "reason"),
            evidence_due_by=from_timestamp(get_stripe_value(evidence, "due_by")),
        )]

    return [Ignored(event_type)]


# ============================================================================
# PAYSTACK
# ============================================================================

def paystack_subscription_code(data: Dict[str, Any]) -> Optional[str]:
    subscription = data.get("subscription")
    if isinstance(subscription, str):
        return subscription or None
    if isinstance(subscription, dict) and subscription.get("subscription_code"):
        return subscription["subscription_code"]
    # subscription.* events carry the subscription object itself as data
    return data.get("subscription_code")


def paystack_plan_code(data: Dict[str, Any]) -> Optional[str]:
    plan = data.get("plan")
    if isinstance(plan, str):
        return plan or None
    if isinstance(plan, dict):
        return plan.get("plan_code")
    return None


def _paystack_next_payment(data: Dict[str, Any]) -> Optional[datetime]:
    subscription = data.get("subscription")
    if isinstance(subscription, dict) and subscription.get("next_payment_date"):
        return parse_iso_datetime(subscription["next_payment_date"])
    return parse_iso_datetime(data.get("next_payment_date"))


def _paystack_transaction_reference(data: Dict[str, Any]) -> Optional[str]:
    transaction = data.get("transaction")
    if isinstance(transaction, dict) and transaction.get("reference"):
        return transaction["reference"]
    return data.get("transaction_reference") or data.get("reference")


def normalize_paystack_event(
    event: Dict[str, Any],
    verify_transaction: Callable[[str], Dict[str, Any]]
) -> List[ProviderEvent]:
    """Map a verified Paystack event to normalized events.

    charge.success is never trusted on its own: the reference is re-verified
    through verify_transaction (GET /transaction/verify) first.
    """
    event_type = event.get("event") or ""
    data = event.get("data") or {}
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    reference = data.get("reference")
    subscription_code = paystack_subscription_code(data)
    plan_code = paystack_plan_code(data)
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}

    if event_type == "charge.success" and reference:
        verification = verify_transaction(reference)
        if verification.get("status") != "success":
            logger.warning(f"Paystack transaction {reference} did not verify as success")
            return [PaymentFailed(intent_reference=reference, provider_ref=reference)]

        intent_reference = metadata.get("payment_intent_id")
        if intent_reference:
            return [PaymentSucceeded(intent_reference=intent_reference, provider_ref=reference)]

        recurring_reference = metadata.get("recurring_donation_id")
        if recurring_reference or subscription_code or plan_code:
            currency = data.get("currency")
            return [RecurringChargeSucceeded(
                reference=reference,
                recurring_reference=recurring_reference,
                subscription_ref=subscription_code,
                plan_ref=plan_code,
                amount=_minor_amount(data.get("amount"), currency),
                currency=_upper(currency),
                next_payment_at=_paystack_next_payment(data),
                is_anonymous=parse_anonymous_flag(metadata.get("is_anonymous")),
                customer_email=customer.get("email"),
                charged_at=parse_iso_datetime(data.get("paid_at") or data.get("paidAt")),
            )]

        # Checkouts initialize with the local intent reference
        return [PaymentSucceeded(intent_reference=reference, provider_ref=reference)]

    if event_type == "charge.failed" and reference:
        return [PaymentFailed(intent_reference=reference, provider_ref=reference)]

    if event_type == "subscription.create":
        return [SubscriptionActivated(
            subscription_ref=subscription_code,
            plan_ref=plan_code,
            recurring_reference=metadata.get("recurring_donation_id"),
            next_payment_at=_paystack_next_payment(data),
        )]

    if event_type in ("subscription.disable", "subscription.not_renew"):
        return [SubscriptionCanceled(subscription_ref=subscription_code, plan_ref=plan_code)]

    if event_type == "invoice.payment_failed":
        return [SubscriptionPaymentFailed(subscription_ref=subscription_code, plan_ref=plan_code)]

    if event_type.startswith("refund.") and data.get("id") is not None:
        currency = data.get("currency")
        return [RefundUpdated(
            provider_ref=str(data["id"]),
            payment_ref=_paystack_transaction_reference(data),
            charge_ref=None,
            amount=_minor_amount(data.get("amount"), currency),
            currency=_upper(currency),
            status=data.get("status") or event_type,
            reason=data.get("reason") or data.get("merchant_note"),
        )]

    if event_type.startswith("charge.dispute"):
        dispute = data.get("dispute") if isinstance(data.get("dispute"), dict) else {}
        dispute_id = dispute.get("id") or data.get("id")
        if dispute_id is not None:
            currency = data.get("currency")
            return [DisputeUpdated(
                provider_ref=str(dispute_id),
                payment_ref=_paystack_transaction_reference(data),
                charge_ref=None,
                amount=_minor_amount(data.get("amount") or data.get("refund_amount"), currency),
                currency=_upper(currency),
                status=dispute.get("status") or data.get("status") or event_type,
                reason=data.get("reason") or data.get("category"),
                evidence_due_by=parse_iso_datetime(data.get("due_at")),
            )]

    return [Ignored(event_type)]

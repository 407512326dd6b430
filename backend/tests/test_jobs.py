"""Billing automation job tests"""
import pytest
from datetime import timedelta
from unittest.mock import patch

from prometheus_client import REGISTRY

from faithflow.core.config import settings
from faithflow.models.audit_log import AuditLog
from faithflow.models.communication_schedule import CommunicationSchedule
from faithflow.models.dispute import Dispute
from faithflow.models.member import Member
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.services.email_service import dispatch_scheduled_communications, queue_email
from faithflow.tasks.billing_automation import run_subscription_automation
from faithflow.tasks.dispute_monitor import alert_stage, run_dispute_alerts
from faithflow.tasks.dunning import run_billing_dunning
from faithflow.tasks.metadata_backfill import read_string, run_subscription_metadata_backfill
from faithflow.tasks.scheduler import JOBS, run_job, run_locked_job
from faithflow.utils.dates import utcnow


def _subscription(db, tenant, plan, status, provider="MANUAL", provider_ref=None, **fields):
    subscription = TenantSubscription(
        tenant_id=tenant.id,
        plan_id=plan.id,
        status=status,
        provider=provider,
        provider_ref=provider_ref,
        **fields,
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def _job_runs(job, status):
    return REGISTRY.get_sample_value("faithflow_job_runs_total", {"job": job, "status": status}) or 0


def _failing_job(db, **_):
    raise RuntimeError("provider outage")


@pytest.mark.high
class TestDunning:
    """Test past-due dunning notices"""

    def test_notices_are_deduplicated(self, db_session, tenant, church, admin_staff, growth_plan):
        """Test each admin gets one notice per 24 hours across runs"""
        _subscription(db_session, tenant, growth_plan, "PAST_DUE", current_period_end=utcnow() - timedelta(days=5))

        first = run_billing_dunning(db_session, grace_days=3)
        second = run_billing_dunning(db_session, grace_days=3)

        assert first["queued"] == 2
        assert second["queued"] == 0
        schedules = db_session.query(CommunicationSchedule).all()
        assert len(schedules) == 2
        assert {s.to for s in schedules} == {"delivered@resend.dev", "delivered+finance@resend.dev"}
        assert all(s.dedupe_key.startswith("dunning:") for s in schedules)
        assert db_session.query(AuditLog).filter(AuditLog.action == "billing.dunning_queued").count() == 2

    def test_grace_window_respected(self, db_session, tenant, church, admin_staff, growth_plan):
        """Test a subscription that only just went past due is left alone"""
        _subscription(db_session, tenant, growth_plan, "PAST_DUE", current_period_end=utcnow() - timedelta(days=1))
        result = run_billing_dunning(db_session, grace_days=3)
        assert result["inspected"] == 0

    def test_dry_run_queues_nothing(self, db_session, tenant, church, admin_staff, growth_plan):
        """Test dry_run reports targets without writing"""
        subscription = _subscription(db_session, tenant, growth_plan, "PAST_DUE")
        result = run_billing_dunning(db_session, dry_run=True)

        assert result["dry_run"] is True
        assert result["targets"] == [{
            "tenant_id": tenant.id,
            "subscription_id": subscription.id,
            "plan_code": "growth",
            "recipient_count": 2,
        }]
        assert db_session.query(CommunicationSchedule).count() == 0


@pytest.mark.high
class TestSubscriptionAutomation:
    """Test the automation sweep"""

    def test_past_due_tenant_is_suspended_once(self, db_session, tenant, church, growth_plan, mock_redis):
        """Test a tenant past due beyond the grace window is suspended and stays suspended"""
        _subscription(db_session, tenant, growth_plan, "PAST_DUE", current_period_end=utcnow() - timedelta(days=20))

        result = run_subscription_automation(db_session, suspend_past_due_after_days=14)
        assert result["billing_actions"][0]["action"] == "suspended_for_past_due"

        db_session.refresh(tenant)
        assert tenant.status == "SUSPENDED"
        assert tenant.suspension_reason == "AUTO_PAST_DUE_14D"
        assert tenant.suspended_at is not None

        again = run_subscription_automation(db_session, suspend_past_due_after_days=14)
        assert again["billing_actions"] == []
        assert db_session.query(AuditLog).filter(AuditLog.action == "subscription.tenant_auto_suspended").count() == 1

    def test_recent_past_due_not_suspended(self, db_session, tenant, church, growth_plan, mock_redis):
        _subscription(db_session, tenant, growth_plan, "PAST_DUE", current_period_end=utcnow() - timedelta(days=2))
        run_subscription_automation(db_session, suspend_past_due_after_days=14)
        db_session.refresh(tenant)
        assert tenant.status == "ACTIVE"

    def test_trial_reminder_queued(self, db_session, tenant, church, admin_staff, growth_plan, mock_redis):
        """Test admins are reminded when the trial ends within the window"""
        _subscription(db_session, tenant, growth_plan, "TRIALING", trial_ends_at=utcnow() + timedelta(days=2))

        run_subscription_automation(db_session, trial_reminder_days_before_end=3)
        run_subscription_automation(db_session, trial_reminder_days_before_end=3)

        schedules = db_session.query(CommunicationSchedule).all()
        assert len(schedules) == 2
        assert schedules[0].subject == "Your FaithFlow trial is ending soon"
        assert schedules[0].extra["reason"] == "trial_ending"

    def test_quota_overage_is_audited(self, db_session, tenant, church, growth_plan, mock_redis):
        """Test exceeding a plan limit is recorded without suspending"""
        db_session.add_all([Member(church_id=church.id, first_name=name) for name in ("Ada", "Ben", "Cal")])
        db_session.commit()

        result = run_subscription_automation(db_session)

        assert result["quota_alerts"] == [{
            "tenant_id": tenant.id, "key": "max_members", "usage": 3, "limit": 2, "plan_code": "growth",
        }]
        audit = db_session.query(AuditLog).filter(AuditLog.action == "subscription.quota_exceeded").one()
        assert audit.details["usage"] == 3
        db_session.refresh(tenant)
        assert tenant.status == "ACTIVE"


@pytest.mark.high
class TestDisputeAlerts:
    """Test evidence deadline alerts"""

    @pytest.mark.parametrize("days,stage", [(-1, "overdue"), (0, "overdue"), (1, "one_day"), (2, "three_days"),
                                            (5, "seven_days"), (8, None)])
    def test_alert_stage(self, days, stage):
        assert alert_stage(days) == stage

    def test_one_alert_per_stage(self, db_session, church, admin_staff):
        """Test a dispute is alerted once for its current stage"""
        dispute = Dispute(church_id=church.id, provider="STRIPE", provider_ref="dp_test123", amount=100,
                          currency="USD", status="needs_response", evidence_due_by=utcnow() + timedelta(hours=12))
        db_session.add(dispute)
        db_session.commit()

        first = run_dispute_alerts(db_session)
        second = run_dispute_alerts(db_session)

        assert first["alerted"] == 1
        assert second == {"scanned": 1, "alerted": 0, "skipped": 1}
        schedules = db_session.query(CommunicationSchedule).all()
        assert len(schedules) == 2
        assert schedules[0].subject == "Dispute evidence due in 1 day"
        assert schedules[0].extra["stage"] == "one_day"
        assert db_session.query(AuditLog).filter(AuditLog.action == "dispute.alert.one_day").count() == 1

    def test_closed_dispute_skipped(self, db_session, church, admin_staff):
        db_session.add(Dispute(church_id=church.id, provider="STRIPE", provider_ref="dp_won", status="won",
                               evidence_due_by=utcnow() + timedelta(hours=12)))
        db_session.commit()
        assert run_dispute_alerts(db_session)["alerted"] == 0
        assert db_session.query(CommunicationSchedule).count() == 0


@pytest.mark.medium
class TestMetadataBackfill:
    """Test provider column backfill"""

    def test_reads_from_extra_without_api_call(self, db_session, tenant, growth_plan, providers, stripe_gateway):
        """Test legacy extra keys fill the columns"""
        record = _subscription(db_session, tenant, growth_plan, "ACTIVE", provider="STRIPE", provider_ref="sub_legacy",
                               extra={"stripe_customer_id": "cus_legacy", "stripe_price_id": "price_legacy"})

        result = run_subscription_metadata_backfill(db_session, providers=providers)

        assert result["updated"] == 1
        stripe_gateway.retrieve_subscription.assert_not_called()
        db_session.refresh(record)
        assert record.provider_customer_id == "cus_legacy"
        assert record.provider_price_id == "price_legacy"
        assert record.provider_subscription_id == "sub_legacy"

    def test_fetches_from_stripe(self, db_session, tenant, growth_plan, providers, stripe_gateway):
        record = _subscription(db_session, tenant, growth_plan, "ACTIVE", provider="STRIPE", provider_ref="sub_test123")
        run_subscription_metadata_backfill(db_session, providers=providers)

        stripe_gateway.retrieve_subscription.assert_called_once_with("sub_test123")
        db_session.refresh(record)
        assert record.provider_customer_id == "cus_test123"
        assert record.provider_price_id == "price_test123"

    def test_fetches_from_paystack(self, db_session, tenant, growth_plan, providers, paystack_client):
        """Test Paystack rows get the email token needed to disable them later"""
        record = _subscription(db_session, tenant, growth_plan, "ACTIVE", provider="PAYSTACK", provider_ref="SUB_test123")
        run_subscription_metadata_backfill(db_session, providers=providers)

        db_session.refresh(record)
        assert record.provider_email_token == "tok_test123"
        assert record.provider_customer_id == "CUS_test123"
        assert record.provider_price_id == "PLN_test123"

    def test_dry_run_and_skip(self, db_session, tenant, growth_plan, providers):
        """Test dry runs do not write and complete rows are skipped"""
        record = _subscription(db_session, tenant, growth_plan, "ACTIVE", provider="STRIPE", provider_ref="sub_test123")
        dry = run_subscription_metadata_backfill(db_session, dry_run=True, providers=providers)
        assert dry["changed_ids"] == [record.id]
        db_session.refresh(record)
        assert record.provider_customer_id is None

        run_subscription_metadata_backfill(db_session, providers=providers)
        again = run_subscription_metadata_backfill(db_session, providers=providers)
        assert again["skipped"] == 1

    def test_manual_rows_ignored(self, db_session, tenant, growth_plan, providers):
        _subscription(db_session, tenant, growth_plan, "ACTIVE")
        assert run_subscription_metadata_backfill(db_session, providers=providers)["scanned"] == 0

    def test_read_string_paths(self):
        source = {"items": {"data": [{"price": {"id": " price_1 "}}]}, "customer": ""}
        assert read_string(source, [("customer",), ("items", "data", "0", "price", "id")]) == "price_1"
        assert read_string(source, [("items", "data", "3", "price", "id")]) is None


@pytest.mark.medium
class TestCommunicationsDispatch:
    """Test the Resend dispatcher"""

    def test_due_emails_are_sent(self, db_session, church):
        """Test queued emails are sent and marked SENT"""
        queue_email(db_session, church.id, "delivered@resend.dev", "Hello", "<p>Hi</p>")
        db_session.commit()

        with patch.object(settings, "RESEND_API_KEY", "re_test"), \
                patch("faithflow.services.email_service.resend") as mock_resend:
            mock_resend.Emails.send.return_value = {"id": "email_123"}
            result = dispatch_scheduled_communications(db_session)

        assert result == {"scanned": 1, "sent": 1, "failed": 0}
        sent_args = mock_resend.Emails.send.call_args[0][0]
        assert sent_args["to"] == "delivered@resend.dev"
        schedule = db_session.query(CommunicationSchedule).one()
        assert schedule.status == "SENT"
        assert schedule.sent_at is not None

    def test_provider_error_marks_failed(self, db_session, church):
        queue_email(db_session, church.id, "delivered@resend.dev", "Hello", "<p>Hi</p>")
        db_session.commit()

        with patch.object(settings, "RESEND_API_KEY", "re_test"), \
                patch("faithflow.services.email_service.resend") as mock_resend:
            mock_resend.Emails.send.side_effect = Exception("rate limited")
            result = dispatch_scheduled_communications(db_session)

        assert result["failed"] == 1
        schedule = db_session.query(CommunicationSchedule).one()
        assert schedule.status == "FAILED"
        assert schedule.error == "rate limited"

    def test_unconfigured_provider_marks_failed(self, db_session, church):
        """Test nothing is sent without an API key"""
        queue_email(db_session, church.id, "delivered@resend.dev", "Hello", "<p>Hi</p>")
        db_session.commit()

        dispatch_scheduled_communications(db_session)
        assert db_session.query(CommunicationSchedule).one().error == "Email provider not configured"

    def test_future_emails_wait(self, db_session, church):
        queue_email(db_session, church.id, "delivered@resend.dev", "Later", "<p>Hi</p>",
                    send_at=utcnow() + timedelta(hours=1))
        db_session.commit()
        assert dispatch_scheduled_communications(db_session)["scanned"] == 0


@pytest.mark.medium
class TestJobRunner:
    """Test the job registry and locking"""

    def test_registry(self):
        assert set(JOBS) == {"subscription-automation", "dunning", "dispute-alerts", "metadata-backfill", "communications"}

    def test_run_job_records_success(self, db_session):
        before = _job_runs("dunning", "success")
        result = run_job("dunning", db_session, dry_run=True)
        assert result["inspected"] == 0
        assert _job_runs("dunning", "success") == before + 1

    def test_run_job_records_failure(self, db_session):
        before = _job_runs("communications", "failure")
        with patch.dict(JOBS, {"communications": _failing_job}):
            with pytest.raises(RuntimeError):
                run_job("communications", db_session)
        assert _job_runs("communications", "failure") == before + 1

    def test_locked_job_is_skipped(self, mock_redis):
        """Test a job is skipped while another worker holds its lock"""
        mock_redis.set("lock:job:dunning", "1")
        before = _job_runs("dunning", "skipped")
        assert run_locked_job("dunning", lock_timeout=60) is None
        assert _job_runs("dunning", "skipped") == before + 1

    def test_lock_released_after_run(self, mock_redis):
        with patch.dict(JOBS, {"dunning": lambda db, **_: {"sent": 0}}):
            assert run_locked_job("dunning", lock_timeout=60) == {"sent": 0}
        assert mock_redis.get("lock:job:dunning") is None

    def test_expired_lock_taken_over_is_kept(self, mock_redis):
        """Test a job outliving its lock does not delete the next worker's lock"""
        def slow_job(db, **_):
            # Lock expired mid-run and another worker acquired it
            mock_redis.set("lock:job:dunning", "other-worker")
            return {"sent": 0}

        with patch.dict(JOBS, {"dunning": slow_job}):
            run_locked_job("dunning", lock_timeout=60)

        assert mock_redis.get("lock:job:dunning") == "other-worker"

"""Platform billing tests: plan assignment and tenant subscription webhooks"""
import pytest
from unittest.mock import patch

from conftest import STRIPE_TEST_PLATFORM_WEBHOOK_SECRET, encode_event, paystack_signature, stripe_signature
from faithflow.core.config import settings
from faithflow.core.errors import BadRequestError, GatewayError, NotFoundError
from faithflow.models.audit_log import AuditLog
from faithflow.models.communication_schedule import CommunicationSchedule
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.services.platform_billing_service import (
    assign_tenant_plan, map_paystack_status, map_stripe_status, queue_tenant_welcome_email,
)
from faithflow.services.webhook_service import process_platform_paystack_webhook, process_platform_stripe_webhook

JAN_1_2026 = 1767225600
FEB_1_2026 = 1769904000


def _send_platform_stripe(db, event):
    payload = encode_event(event)
    return process_platform_stripe_webhook(db, payload, stripe_signature(payload, STRIPE_TEST_PLATFORM_WEBHOOK_SECRET))


def _send_platform_paystack(db, event, providers):
    payload = encode_event(event)
    return process_platform_paystack_webhook(db, payload, paystack_signature(payload), providers)


def _stripe_subscription_event(tenant, event_id="evt_sub_created", status="active", price="price_starter"):
    return {
        "id": event_id,
        "type": "customer.subscription.created",
        "data": {"object": {
            "id": "sub_platform1",
            "object": "subscription",
            "status": status,
            "customer": "cus_platform1",
            "cancel_at_period_end": False,
            "metadata": {"tenant_id": str(tenant.id)},
            "items": {"data": [{
                "price": {"id": price},
                "current_period_start": JAN_1_2026,
                "current_period_end": FEB_1_2026,
            }]},
        }},
    }


def _paystack_subscription_create(tenant, plan_code="PLN_growth", plan_change_from=None):
    metadata = {"tenant_id": tenant.id}
    if plan_change_from:
        metadata["plan_change_from"] = plan_change_from
    return {
        "event": "subscription.create",
        "data": {
            "id": 77001,
            "subscription_code": "SUB_new1",
            "email_token": "tok_new1",
            "status": "active",
            "next_payment_date": "2026-02-01T10:00:00.000Z",
            "plan": {"plan_code": plan_code},
            "customer": {"customer_code": "CUS_platform1"},
            "metadata": metadata,
        },
    }


@pytest.mark.high
class TestAssignTenantPlan:
    """Test manual plan assignment"""

    def test_assignment_replaces_current_subscription(self, db_session, tenant, growth_plan, starter_plan):
        """Test the previous subscription is canceled when a new plan is assigned"""
        first = assign_tenant_plan(db_session, tenant.id, "growth")
        second = assign_tenant_plan(db_session, tenant.id, "starter", actor_id="ops@faithflow.ai")

        db_session.refresh(first)
        assert first.status == "CANCELED"
        assert first.canceled_at is not None
        assert second.status == "ACTIVE"
        assert second.provider == "MANUAL"
        assert second.provider_ref is None

        audit = db_session.query(AuditLog).filter(
            AuditLog.action == "platform.tenant.plan_assigned",
            AuditLog.target_id == str(second.id)
        ).one()
        assert audit.details["previous_plan_code"] == "growth"
        assert audit.actor_id == "ops@faithflow.ai"

    def test_unknown_plan(self, db_session, tenant):
        with pytest.raises(NotFoundError):
            assign_tenant_plan(db_session, tenant.id, "platinum")

    def test_unknown_tenant(self, db_session, growth_plan):
        with pytest.raises(NotFoundError):
            assign_tenant_plan(db_session, 4040, "growth")

    def test_inactive_plan_rejected(self, db_session, tenant, starter_plan):
        starter_plan.is_active = False
        db_session.commit()
        with pytest.raises(BadRequestError):
            assign_tenant_plan(db_session, tenant.id, "starter")

    def test_invalid_status_rejected(self, db_session, tenant, growth_plan):
        with pytest.raises(BadRequestError):
            assign_tenant_plan(db_session, tenant.id, "growth", status="LAPSED")


@pytest.mark.high
class TestPlatformStripeWebhooks:
    """Test tenant subscription sync from Stripe"""

    def test_subscription_created_syncs_plan_from_price(self, db_session, tenant, growth_plan, starter_plan):
        """Test the plan is resolved by price id and older subscriptions are superseded"""
        manual = assign_tenant_plan(db_session, tenant.id, "growth")

        assert _send_platform_stripe(db_session, _stripe_subscription_event(tenant)) == {"received": True}

        record = db_session.query(TenantSubscription).filter(TenantSubscription.provider == "STRIPE").one()
        assert record.plan_id == starter_plan.id
        assert record.status == "ACTIVE"
        assert record.provider_ref == "sub_platform1"
        assert record.provider_customer_id == "cus_platform1"
        assert record.provider_price_id == "price_starter"
        assert record.current_period_end is not None
        db_session.refresh(manual)
        assert manual.status == "CANCELED"

    def test_subscription_update_is_idempotent_per_event(self, db_session, tenant, growth_plan, starter_plan):
        """Test a replayed event is reported as a duplicate"""
        event = _stripe_subscription_event(tenant)
        _send_platform_stripe(db_session, event)
        assert _send_platform_stripe(db_session, event) == {"received": True, "duplicate": True}
        assert db_session.query(TenantSubscription).count() == 1

    def test_unknown_tenant_is_skipped(self, db_session, tenant, growth_plan):
        """Test events for tenants we do not know are recorded and skipped"""
        event = _stripe_subscription_event(tenant)
        event["data"]["object"]["metadata"]["tenant_id"] = "999"
        _send_platform_stripe(db_session, event)
        assert db_session.query(TenantSubscription).count() == 0

    def test_payment_failure_marks_past_due(self, db_session, tenant, growth_plan, starter_plan):
        """Test invoice.payment_failed moves the subscription to PAST_DUE, invoice.paid back to ACTIVE"""
        _send_platform_stripe(db_session, _stripe_subscription_event(tenant))

        _send_platform_stripe(db_session, {
            "id": "evt_inv_failed",
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_1", "subscription": "sub_platform1", "customer": "cus_platform1"}},
        })
        record = db_session.query(TenantSubscription).filter(TenantSubscription.provider == "STRIPE").one()
        assert record.status == "PAST_DUE"

        _send_platform_stripe(db_session, {
            "id": "evt_inv_paid",
            "type": "invoice.paid",
            "data": {"object": {
                "id": "in_2",
                "parent": {"subscription_details": {"subscription": "sub_platform1"}},
            }},
        })
        db_session.refresh(record)
        assert record.status == "ACTIVE"

    def test_welcome_email_once(self, db_session, tenant, church, admin_staff, growth_plan, starter_plan):
        """Test an active subscription queues one welcome email per admin"""
        with patch.object(settings, "RESEND_API_KEY", "re_test"), \
                patch.object(settings, "RESEND_FROM_EMAIL", "FaithFlow <billing@faithflow.ai>"):
            _send_platform_stripe(db_session, _stripe_subscription_event(tenant))
            _send_platform_stripe(db_session, _stripe_subscription_event(tenant, event_id="evt_sub_updated"))

        welcome = db_session.query(CommunicationSchedule).all()
        assert len(welcome) == 2
        assert all(s.subject == "Welcome to FaithFlow AI" for s in welcome)

    def test_no_welcome_without_email_settings(self, db_session, tenant, church, admin_staff):
        assert queue_tenant_welcome_email(db_session, tenant.id) == 0


@pytest.mark.high
class TestPlatformPaystackWebhooks:
    """Test tenant subscription sync from Paystack"""

    def test_subscription_create(self, db_session, tenant, growth_plan, providers):
        """Test subscription.create stores codes and the email token"""
        _send_platform_paystack(db_session, _paystack_subscription_create(tenant), providers)

        record = db_session.query(TenantSubscription).one()
        assert record.provider == "PAYSTACK"
        assert record.provider_ref == "SUB_new1"
        assert record.provider_subscription_id == "SUB_new1"
        assert record.provider_email_token == "tok_new1"
        assert record.provider_customer_id == "CUS_platform1"
        assert record.plan_id == growth_plan.id

    def test_plan_change_disables_previous(self, db_session, tenant, growth_plan, starter_plan, providers, paystack_client):
        """Test the replaced Paystack subscription is disabled at the provider"""
        old = TenantSubscription(
            tenant_id=tenant.id, plan_id=starter_plan.id, status="ACTIVE", provider="PAYSTACK",
            provider_ref="SUB_old1", provider_subscription_id="SUB_old1", provider_email_token="tok_old1",
        )
        db_session.add(old)
        db_session.commit()

        _send_platform_paystack(db_session, _paystack_subscription_create(tenant, plan_change_from="starter"), providers)

        paystack_client.disable_subscription.assert_called_once_with("SUB_old1", "tok_old1")
        db_session.refresh(old)
        assert old.status == "CANCELED"
        attempt = db_session.query(AuditLog).filter(
            AuditLog.action == "platform.subscription.plan_change_paystack_disable_attempt"
        ).one()
        assert attempt.details["ok"] is True
        assert attempt.details["from_plan"] == "starter"

    def test_plan_change_disable_failure_is_recorded(self, db_session, tenant, growth_plan, starter_plan, providers,
                                                     paystack_client):
        """Test a provider error does not fail the webhook"""
        db_session.add(TenantSubscription(
            tenant_id=tenant.id, plan_id=starter_plan.id, status="ACTIVE", provider="PAYSTACK",
            provider_ref="SUB_old1", provider_subscription_id="SUB_old1", provider_email_token="tok_old1",
        ))
        db_session.commit()
        paystack_client.disable_subscription.side_effect = GatewayError("Paystack request failed: 400")

        result = _send_platform_paystack(
            db_session, _paystack_subscription_create(tenant, plan_change_from="starter"), providers
        )

        assert result == {"received": True}
        attempt = db_session.query(AuditLog).filter(
            AuditLog.action == "platform.subscription.plan_change_paystack_disable_attempt"
        ).one()
        assert attempt.details["ok"] is False
        assert attempt.details["error"] == "Paystack request failed: 400"

    def test_subscription_disable_cancels(self, db_session, tenant, growth_plan, providers):
        _send_platform_paystack(db_session, _paystack_subscription_create(tenant), providers)
        event = _paystack_subscription_create(tenant)
        event["event"] = "subscription.disable"
        event["data"]["status"] = "complete"
        _send_platform_paystack(db_session, event, providers)

        record = db_session.query(TenantSubscription).one()
        assert record.status == "CANCELED"
        assert record.canceled_at is not None

    def test_one_time_charge_ignored(self, db_session, tenant, growth_plan, providers):
        """Test charge.success without a plan is not a subscription event"""
        _send_platform_paystack(db_session, {
            "event": "charge.success",
            "data": {"id": 5, "reference": "ref_5", "metadata": {"tenant_id": tenant.id}},
        }, providers)
        assert db_session.query(TenantSubscription).count() == 0


@pytest.mark.medium
class TestStatusMaps:
    """Test provider status mapping"""

    @pytest.mark.parametrize("raw,expected", [
        ("trialing", "TRIALING"), ("past_due", "PAST_DUE"), ("unpaid", "PAST_DUE"),
        ("incomplete_expired", "EXPIRED"), ("canceled", "CANCELED"), (None, "ACTIVE"),
    ])
    def test_stripe(self, raw, expected):
        assert map_stripe_status(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("non-renewing", "PAUSED"), ("attention", "PAST_DUE"), ("complete", "CANCELED"), ("whatever", "ACTIVE"),
    ])
    def test_paystack(self, raw, expected):
        assert map_paystack_status(raw) == expected

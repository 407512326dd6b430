"""Payment reconciliation tests through the webhook pipeline"""
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from conftest import encode_event, make_donation, make_intent, make_recurring, paystack_signature, stripe_signature
from faithflow.core.errors import WebhookSignatureError
from faithflow.models.audit_log import AuditLog
from faithflow.models.donation import Donation
from faithflow.models.donation_receipt import DonationReceipt
from faithflow.models.event import Event
from faithflow.models.event_rsvp import EventRsvp
from faithflow.models.event_ticket_order import EventTicketOrder
from faithflow.models.event_ticket_type import EventTicketType
from faithflow.models.member import Member
from faithflow.models.payment_intent import PaymentIntent
from faithflow.models.webhook_event import WebhookEvent
from faithflow.services.webhook_service import process_paystack_webhook, process_stripe_webhook
from faithflow.utils.dates import as_utc

JAN_1_2026 = 1767225600
FEB_1_2026 = 1769904000


def _send_stripe(db, event, providers):
    payload = encode_event(event)
    return process_stripe_webhook(db, payload, stripe_signature(payload), providers)


def _send_paystack(db, event, providers):
    payload = encode_event(event)
    return process_paystack_webhook(db, payload, paystack_signature(payload), providers)


def _checkout_completed(intent, event_id="evt_cs_completed"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test123",
            "object": "checkout.session",
            "mode": "payment",
            "client_reference_id": intent.reference,
            "payment_intent": "pi_test123",
            "metadata": {"payment_intent_id": intent.reference, "is_anonymous": "false"},
        }},
    }


def _invoice_paid(event_id, subscription="sub_test123", invoice_id="in_test123"):
    return {
        "id": event_id,
        "type": "invoice.paid",
        "data": {"object": {
            "id": invoice_id,
            "object": "invoice",
            "subscription": subscription,
            "amount_paid": 2500,
            "currency": "usd",
            "customer_email": "delivered@resend.dev",
            "status_transitions": {"paid_at": JAN_1_2026},
            "lines": {"data": [{"period": {"start": JAN_1_2026, "end": FEB_1_2026}}]},
        }},
    }


@pytest.fixture
def realtime():
    with patch("faithflow.services.webhook_service.emit_realtime_event") as emit:
        yield emit


@pytest.mark.critical
class TestStripeOneTimePayments:
    """Test checkout completion and its side effects"""

    def test_checkout_completed_settles_donation(self, db_session, church, providers, realtime):
        """Test checkout.session.completed marks intent and donation paid"""
        intent = make_intent(db_session, church)
        donation = make_donation(db_session, church, intent)

        result = _send_stripe(db_session, _checkout_completed(intent), providers)
        assert result == {"received": True}

        db_session.refresh(intent)
        db_session.refresh(donation)
        assert intent.status == "SUCCEEDED"
        assert intent.provider_ref == "pi_test123"
        assert donation.status == "COMPLETED"
        assert donation.provider_ref == "pi_test123"
        assert donation.is_anonymous is False

        receipt = db_session.query(DonationReceipt).filter(DonationReceipt.donation_id == donation.id).one()
        assert receipt.receipt_number.startswith("FF-")

        record = db_session.query(WebhookEvent).one()
        assert record.status == "PROCESSED"
        assert record.church_id == church.id
        assert record.tenant_id == church.tenant_id
        assert record.result == {"outcomes": ["processed"]}

        realtime.assert_called_once()
        published = realtime.call_args[0][0]
        assert published.type == "donation.created"
        assert published.church_id == church.id
        assert published.data["id"] == donation.id

    def test_replayed_delivery_has_no_second_effect(self, db_session, church, providers, realtime):
        """Test the same event twice yields one donation, one receipt, one realtime event"""
        intent = make_intent(db_session, church)
        make_donation(db_session, church, intent)
        event = _checkout_completed(intent)

        assert _send_stripe(db_session, event, providers) == {"received": True}
        assert _send_stripe(db_session, event, providers) == {"received": True, "duplicate": True}

        assert db_session.query(Donation).filter(Donation.status == "COMPLETED").count() == 1
        assert db_session.query(DonationReceipt).count() == 1
        assert db_session.query(AuditLog).filter(AuditLog.action == "donation.completed").count() == 1
        assert realtime.call_count == 1

    def test_second_event_for_same_payment_is_a_no_op(self, db_session, church, providers, realtime):
        """Test payment_intent.succeeded after checkout completion does not re-fire side effects"""
        intent = make_intent(db_session, church)
        make_donation(db_session, church, intent)
        _send_stripe(db_session, _checkout_completed(intent), providers)

        succeeded = {
            "id": "evt_pi_succeeded",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_test123", "metadata": {"payment_intent_id": intent.reference}}},
        }
        assert _send_stripe(db_session, succeeded, providers) == {"received": True}

        assert db_session.query(DonationReceipt).count() == 1
        assert realtime.call_count == 1

    def test_failure_never_downgrades_succeeded_intent(self, db_session, church, providers, realtime):
        """Test a late payment_failed leaves a SUCCEEDED intent alone"""
        intent = make_intent(db_session, church)
        donation = make_donation(db_session, church, intent)
        _send_stripe(db_session, _checkout_completed(intent), providers)

        failed = {
            "id": "evt_pi_failed",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_test123", "metadata": {"payment_intent_id": intent.reference}}},
        }
        _send_stripe(db_session, failed, providers)

        db_session.refresh(intent)
        db_session.refresh(donation)
        assert intent.status == "SUCCEEDED"
        assert donation.status == "COMPLETED"

    def test_payment_failed_cascades(self, db_session, church, providers, realtime):
        """Test payment_failed marks intent and donation FAILED with an audit row"""
        intent = make_intent(db_session, church, provider_ref="pi_fail")
        donation = make_donation(db_session, church, intent, provider_ref="pi_fail")

        failed = {
            "id": "evt_pi_failed",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_fail", "metadata": {"payment_intent_id": intent.reference}}},
        }
        _send_stripe(db_session, failed, providers)

        db_session.refresh(intent)
        db_session.refresh(donation)
        assert intent.status == "FAILED"
        assert donation.status == "FAILED"
        assert db_session.query(AuditLog).filter(AuditLog.action == "payment.failed").count() == 1
        realtime.assert_not_called()

    def test_ticket_order_paid_confirms_rsvp(self, db_session, church, providers, realtime):
        """Test a paid ticket order sets the member's RSVP to GOING"""
        member = Member(church_id=church.id, first_name="Ruth", last_name="Ade", email="delivered@resend.dev")
        event = Event(church_id=church.id, title="Youth Retreat", capacity=100, requires_rsvp=True)
        db_session.add_all([member, event])
        db_session.flush()
        ticket_type = EventTicketType(event_id=event.id, name="General", price=Decimal("15.00"), currency="USD")
        db_session.add(ticket_type)
        db_session.flush()
        order = EventTicketOrder(
            church_id=church.id, event_id=event.id, ticket_type_id=ticket_type.id, member_id=member.id,
            quantity=3, amount=Decimal("45.00"), currency="USD", provider="STRIPE", status="PENDING",
        )
        db_session.add(order)
        db_session.commit()
        intent = make_intent(db_session, church, amount="45.00", ticket_order_id=order.id)

        _send_stripe(db_session, _checkout_completed(intent), providers)

        db_session.refresh(order)
        assert order.status == "PAID"
        rsvp = db_session.query(EventRsvp).filter(EventRsvp.event_id == event.id).one()
        assert rsvp.member_id == member.id
        assert rsvp.status == "GOING"
        assert rsvp.guest_count == 2

    def test_unknown_event_is_ignored(self, db_session, providers, realtime):
        """Test unhandled event types are recorded as ignored"""
        event = {"id": "evt_other", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        assert _send_stripe(db_session, event, providers) == {"received": True}
        assert db_session.query(WebhookEvent).one().result == {"outcomes": ["ignored"]}

    def test_invalid_signature_is_not_recorded(self, db_session, providers):
        """Test a bad signature raises and leaves the ledger empty"""
        payload = encode_event({"id": "evt_bad", "type": "invoice.paid", "data": {"object": {}}})
        with pytest.raises(WebhookSignatureError):
            process_stripe_webhook(db_session, payload, "t=1,v1=deadbeef", providers)
        assert db_session.query(WebhookEvent).count() == 0


@pytest.mark.critical
class TestStripeRecurring:
    """Test recurring invoice handling"""

    def test_invoice_paid_records_one_donation(self, db_session, church, providers, realtime):
        """Test two deliveries of the same invoice create one donation"""
        recurring = make_recurring(db_session, church, provider_ref="sub_test123", provider_subscription_code="sub_test123")

        _send_stripe(db_session, _invoice_paid("evt_inv_1"), providers)
        _send_stripe(db_session, _invoice_paid("evt_inv_1_resent"), providers)

        donations = db_session.query(Donation).filter(Donation.recurring_donation_id == recurring.id).all()
        assert len(donations) == 1
        assert donations[0].amount == Decimal("25.00")
        assert donations[0].status == "COMPLETED"
        assert donations[0].provider_ref == "in_test123"
        assert db_session.query(DonationReceipt).count() == 1
        assert realtime.call_count == 1

        db_session.refresh(recurring)
        assert as_utc(recurring.last_charge_at) == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert as_utc(recurring.next_charge_at) == datetime(2026, 2, 1, tzinfo=timezone.utc)

    def test_invoice_paid_reactivates_paused_gift(self, db_session, church, providers, realtime):
        """Test a paid invoice moves a PAUSED recurring donation to ACTIVE"""
        recurring = make_recurring(db_session, church, status="PAUSED", provider_subscription_code="sub_test123")
        _send_stripe(db_session, _invoice_paid("evt_inv_2"), providers)

        db_session.refresh(recurring)
        assert recurring.status == "ACTIVE"

    def test_invoice_for_unknown_subscription(self, db_session, church, providers, realtime):
        """Test an invoice with no matching recurring donation is recorded, not failed"""
        _send_stripe(db_session, _invoice_paid("evt_inv_3", subscription="sub_unknown"), providers)
        record = db_session.query(WebhookEvent).one()
        assert record.status == "PROCESSED"
        assert record.result == {"outcomes": ["recurring_not_found"]}

    def test_subscription_deleted_cancels_gift(self, db_session, church, providers, realtime):
        """Test customer.subscription.deleted cancels the recurring donation"""
        recurring = make_recurring(db_session, church, provider_subscription_code="sub_test123")
        event = {"id": "evt_sub_del", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_test123"}}}
        _send_stripe(db_session, event, providers)

        db_session.refresh(recurring)
        assert recurring.status == "CANCELED"

    def test_payment_failed_does_not_revive_canceled_gift(self, db_session, church, providers, realtime):
        """Test invoice.payment_failed leaves a CANCELED gift canceled"""
        recurring = make_recurring(db_session, church, status="CANCELED", provider_subscription_code="sub_test123")
        event = {"id": "evt_inv_fail", "type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_test123"}}}
        _send_stripe(db_session, event, providers)

        db_session.refresh(recurring)
        assert recurring.status == "CANCELED"


@pytest.mark.critical
class TestPaystackPayments:
    """Test Paystack charge handling (always re-verified)"""

    def _charge_success(self, reference, metadata=None, **data):
        body = {"id": 555, "reference": reference, "amount": 500000, "currency": "NGN", "status": "success"}
        body["metadata"] = metadata or {}
        body.update(data)
        return {"event": "charge.success", "data": body}

    def test_verified_charge_settles_intent(self, db_session, church, providers, paystack_client, realtime):
        """Test a verified charge.success completes the donation"""
        intent = make_intent(db_session, church, provider="PAYSTACK", provider_ref="ps_ref_1", amount="5000.00", currency="NGN")
        donation = make_donation(db_session, church, intent, provider="PAYSTACK", provider_ref="ps_ref_1",
                                 amount="5000.00", currency="NGN")

        event = self._charge_success("ps_ref_1", metadata={"payment_intent_id": intent.reference})
        assert _send_paystack(db_session, event, providers) == {"received": True}

        paystack_client.verify_transaction.assert_called_once_with("ps_ref_1")
        db_session.refresh(donation)
        assert donation.status == "COMPLETED"
        assert db_session.query(PaymentIntent).one().status == "SUCCEEDED"
        assert realtime.call_count == 1

    def test_unverified_charge_fails_intent(self, db_session, church, providers, paystack_client, realtime):
        """Test a charge that does not verify as success fails the intent"""
        paystack_client.verify_transaction.return_value = {"status": "abandoned"}
        intent = make_intent(db_session, church, provider="PAYSTACK", provider_ref="ps_ref_2", amount="5000.00", currency="NGN")
        donation = make_donation(db_session, church, intent, provider="PAYSTACK", provider_ref="ps_ref_2",
                                 amount="5000.00", currency="NGN")

        _send_paystack(db_session, self._charge_success("ps_ref_2"), providers)

        db_session.refresh(intent)
        db_session.refresh(donation)
        assert intent.status == "FAILED"
        assert donation.status == "FAILED"
        realtime.assert_not_called()

    def test_recurring_charge_records_donation(self, db_session, church, providers, realtime):
        """Test a recurring Paystack charge creates a donation and activates the gift"""
        recurring = make_recurring(db_session, church, provider="PAYSTACK", status="PAUSED", amount="5000.00",
                                   currency="NGN", provider_plan_code="PLN_test123")
        event = self._charge_success(
            "ps_recurring_1",
            metadata={"recurring_donation_id": recurring.reference},
            plan={"plan_code": "PLN_test123"},
            paid_at="2026-01-01T10:00:00.000Z",
            customer={"email": "delivered@resend.dev"},
        )

        _send_paystack(db_session, event, providers)
        _send_paystack(db_session, event, providers)

        donations = db_session.query(Donation).filter(Donation.recurring_donation_id == recurring.id).all()
        assert len(donations) == 1
        assert donations[0].amount == Decimal("5000.00")
        assert donations[0].currency == "NGN"

        db_session.refresh(recurring)
        assert recurring.status == "ACTIVE"
        assert as_utc(recurring.next_charge_at) == datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)

    def test_recurring_charge_keeps_canceled_gift_canceled(self, db_session, church, providers, realtime):
        """Test a late charge on a CANCELED gift is recorded without reviving it"""
        recurring = make_recurring(db_session, church, provider="PAYSTACK", status="CANCELED", amount="5000.00",
                                   currency="NGN", provider_plan_code="PLN_test123")
        event = self._charge_success("ps_recurring_2", plan={"plan_code": "PLN_test123"})
        _send_paystack(db_session, event, providers)

        db_session.refresh(recurring)
        assert recurring.status == "CANCELED"
        assert db_session.query(Donation).filter(Donation.recurring_donation_id == recurring.id).count() == 1

    def test_subscription_create_activates_gift(self, db_session, church, providers, realtime):
        """Test subscription.create stores the subscription code"""
        recurring = make_recurring(db_session, church, provider="PAYSTACK", status="PAUSED", amount="5000.00",
                                   currency="NGN", provider_plan_code="PLN_test123")
        event = {"event": "subscription.create", "data": {
            "subscription_code": "SUB_abc123",
            "plan": {"plan_code": "PLN_test123"},
            "next_payment_date": "2026-02-01T00:00:00.000Z",
        }}
        _send_paystack(db_session, event, providers)

        db_session.refresh(recurring)
        assert recurring.status == "ACTIVE"
        assert recurring.provider_subscription_code == "SUB_abc123"
        assert as_utc(recurring.next_charge_at) == datetime(2026, 2, 1, tzinfo=timezone.utc)

    def test_invalid_signature_is_rejected(self, db_session, providers):
        """Test a bad x-paystack-signature is rejected before the ledger"""
        payload = encode_event(self._charge_success("ps_ref_3"))
        with pytest.raises(WebhookSignatureError):
            process_paystack_webhook(db_session, payload, "0" * 128, providers)
        assert db_session.query(WebhookEvent).count() == 0

    def test_processing_error_marks_row_failed(self, db_session, church, providers, paystack_client, realtime):
        """Test an exception rolls back business changes and leaves a FAILED row for the retry"""
        paystack_client.verify_transaction.side_effect = RuntimeError("paystack timeout")
        intent = make_intent(db_session, church, provider="PAYSTACK", provider_ref="ps_ref_4", amount="5000.00", currency="NGN")
        event = self._charge_success("ps_ref_4", metadata={"payment_intent_id": intent.reference})

        with pytest.raises(RuntimeError):
            _send_paystack(db_session, event, providers)

        record = db_session.query(WebhookEvent).one()
        assert record.status == "FAILED"
        assert "paystack timeout" in record.error

        # Provider retry succeeds on the same row
        paystack_client.verify_transaction.side_effect = None
        assert _send_paystack(db_session, event, providers) == {"received": True}
        db_session.refresh(record)
        assert record.status == "PROCESSED"
        db_session.refresh(intent)
        assert intent.status == "SUCCEEDED"

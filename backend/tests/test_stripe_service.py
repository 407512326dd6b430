"""Stripe gateway and client factory tests"""
import pytest
import stripe
from unittest.mock import Mock, patch

from faithflow.core.config import settings
from faithflow.core.errors import GatewayError, PreconditionFailedError
from faithflow.services.stripe_service import StripeClientFactory, StripeGateway


@pytest.mark.high
class TestStripeClientFactory:
    """Test per-key client caching"""

    def test_one_gateway_per_key(self):
        """Test the same key reuses its gateway and a rotated key gets a new one"""
        factory = StripeClientFactory()
        first = factory.get("sk_test_one")

        assert factory.get("sk_test_one") is first
        assert factory.get("sk_test_two") is not first
        assert isinstance(first.client, stripe.StripeClient)

    def test_client_carries_timeout_and_retries(self):
        """Test timeout and retries are set on the client, not on the stripe module"""
        module_retries = stripe.max_network_retries
        module_http_client = stripe.default_http_client

        with patch.object(settings, "STRIPE_TIMEOUT_SECONDS", 7), \
                patch.object(settings, "STRIPE_MAX_NETWORK_RETRIES", 4), \
                patch("faithflow.services.stripe_service.stripe.StripeClient") as client_cls:
            StripeClientFactory().get("sk_test_one")

        args, kwargs = client_cls.call_args
        assert args == ("sk_test_one",)
        assert kwargs["max_network_retries"] == 4
        assert isinstance(kwargs["http_client"], stripe.RequestsClient)
        assert stripe.max_network_retries == module_retries
        assert stripe.default_http_client is module_http_client

    def test_missing_key(self):
        with patch.object(settings, "STRIPE_SECRET_KEY", ""):
            with pytest.raises(PreconditionFailedError):
                StripeClientFactory().get()


@pytest.mark.high
class TestStripeGateway:
    """Test calls go through the bound client"""

    def test_checkout_session_params(self):
        client = Mock()
        client.checkout.sessions.create.return_value = {"id": "cs_test123"}

        session = StripeGateway(client).create_checkout_session(mode="payment", client_reference_id="pi_ref")

        assert session == {"id": "cs_test123"}
        client.checkout.sessions.create.assert_called_once_with(
            params={"mode": "payment", "client_reference_id": "pi_ref"}
        )

    def test_refund_and_lookups(self):
        client = Mock()
        gateway = StripeGateway(client)

        gateway.create_refund(payment_intent="pi_test123", amount=500)
        gateway.retrieve_checkout_session("cs_test123")
        gateway.retrieve_subscription("sub_test123")

        client.refunds.create.assert_called_once_with(params={"payment_intent": "pi_test123", "amount": 500})
        client.checkout.sessions.retrieve.assert_called_once_with("cs_test123")
        client.subscriptions.retrieve.assert_called_once_with("sub_test123")

    def test_stripe_error_becomes_gateway_error(self):
        """Test SDK errors surface as GatewayError"""
        client = Mock()
        client.refunds.create.side_effect = stripe.InvalidRequestError("Charge already refunded", "charge")

        with pytest.raises(GatewayError, match="Charge already refunded"):
            StripeGateway(client).create_refund(payment_intent="pi_test123")

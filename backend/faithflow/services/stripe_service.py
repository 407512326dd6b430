import hashlib
import json
import logging
import threading
import stripe
from typing import Any, Dict, Optional

from faithflow.core.config import settings
from faithflow.core.errors import GatewayError, PreconditionFailedError, WebhookSignatureError

logger = logging.getLogger(__name__)


# ============================================================================
# STRIPE GATEWAY
# ============================================================================

class StripeGateway:
    """Stripe API calls bound to one StripeClient.

    The client carries its own key, timeout and retry budget, so nothing
    process-global on the stripe module is touched. Stripe errors are
    re-raised as GatewayError.
    """

    def __init__(self, client: stripe.StripeClient):
        self.client = client

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {description} failed: {e}")
            raise GatewayError(f"Stripe {description} failed: {getattr(e, 'user_message', None) or e}")

    def create_checkout_session(self, **params) -> Any:
        return self._call("checkout session creation", self.client.checkout.sessions.create, params=params)

    def retrieve_checkout_session(self, session_id: str) -> Any:
        return self._call("checkout session lookup", self.client.checkout.sessions.retrieve, session_id)

    def create_refund(self, **params) -> Any:
        return self._call("refund creation", self.client.refunds.create, params=params)

    def retrieve_subscription(self, subscription_id: str) -> Any:
        return self._call("subscription lookup", self.client.subscriptions.retrieve, subscription_id)


class StripeClientFactory:
    """Caches one StripeGateway per credential fingerprint.

    Rotating STRIPE_SECRET_KEY yields a new gateway on the next call; the old
    one stays valid for in-flight requests.
    """

    def __init__(self):
        self._clients: Dict[str, StripeGateway] = {}
        self._lock = threading.Lock()

    @staticmethod
    def fingerprint(api_key: str) -> str:
        return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]

    @staticmethod
    def build_client(api_key: str) -> stripe.StripeClient:
        return stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS),
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        )

    def get(self, api_key: Optional[str] = None) -> StripeGateway:
        key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        if not key:
            raise PreconditionFailedError("Stripe is not configured")

        fingerprint = self.fingerprint(key)
        with self._lock:
            client = self._clients.get(fingerprint)
            if client is None:
                client = StripeGateway(self.build_client(key))
                self._clients[fingerprint] = client
                logger.info(f"Initialized Stripe gateway for key fingerprint {fingerprint}")
            return client

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()


stripe_clients = StripeClientFactory()


# ============================================================================
# WEBHOOK VERIFICATION
# ============================================================================

def construct_stripe_event(payload: bytes, sig_header: Optional[str], secret: str) -> Dict[str, Any]:
    """Verify a Stripe webhook signature and return the event as a plain dict

    The SDK only verifies; the returned event is the decoded raw body so the
    provider adapters work on JSON shapes rather than StripeObjects.

    Raises:
        PreconditionFailedError: If the webhook secret is not configured
        WebhookSignatureError: For a missing/invalid signature or payload
    """
    if not secret:
        logger.error("Stripe webhook secret not configured")
        raise PreconditionFailedError("Stripe webhook secret not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
        event = json.loads(payload)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise WebhookSignatureError("Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise WebhookSignatureError("Invalid signature")

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookSignatureError("Invalid payload")
    return event


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, default)
    return default if value is None else value


def stripe_id(value: Any) -> Optional[str]:
    """Id of an expandable Stripe field (either 'xx_123' or an object with .id)"""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return get_stripe_value(value, "id")

"""Paystack REST client and webhook signature verification"""
import hashlib
import hmac
import logging
import threading
from typing import Any, Dict, Optional

import httpx

from faithflow.core.config import settings
from faithflow.core.errors import GatewayError, PreconditionFailedError, WebhookSignatureError

logger = logging.getLogger(__name__)


class PaystackClient:
    """Thin synchronous client over the Paystack REST API.

    Every response envelope is {"status": bool, "message": str, "data": ...};
    a transport error, non-2xx response or status=false raises GatewayError.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self._http.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.error(f"Paystack {method} {path} failed: {e}")
            raise GatewayError(f"Paystack request failed: {e}")

        if response.status_code >= 400:
            logger.error(f"Paystack {method} {path} returned {response.status_code}: {response.text}")
            raise GatewayError(f"Paystack error: {response.text}")

        try:
            payload = response.json()
        except ValueError:
            raise GatewayError("Paystack returned a non-JSON response")

        if not payload.get("status"):
            raise GatewayError(payload.get("message") or f"Paystack {path} failed")
        return payload.get("data") or {}

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def initialize_transaction(
        self,
        amount: int,
        email: str,
        currency: str,
        reference: str,
        callback_url: str,
        metadata: Dict[str, Any],
        plan: Optional[str] = None
    ) -> Dict[str, Any]:
        """Start a hosted checkout. Returns data with authorization_url and reference."""
        body = {
            "amount": amount,
            "email": email,
            "currency": currency.upper(),
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
        }
        if plan:
            body["plan"] = plan
        data = self._request("POST", "/transaction/initialize", json=body)
        if not data.get("authorization_url"):
            raise GatewayError("Paystack checkout failed")
        return data

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return self._request("GET", f"/transaction/verify/{reference}")

    # ------------------------------------------------------------------
    # Plans & subscriptions
    # ------------------------------------------------------------------

    def create_plan(self, name: str, interval: str, amount: int, currency: str, description: str) -> str:
        """Create a plan and return its plan_code"""
        data = self._request("POST", "/plan", json={
            "name": name,
            "interval": interval,
            "amount": amount,
            "currency": currency.upper(),
            "description": description,
        })
        plan_code = data.get("plan_code")
        if not plan_code:
            raise GatewayError("Paystack plan failed")
        return plan_code

    def fetch_subscription(self, code: str) -> Dict[str, Any]:
        return self._request("GET", f"/subscription/{code}")

    def disable_subscription(self, code: str, email_token: str) -> Dict[str, Any]:
        return self._request("POST", "/subscription/disable", json={"code": code, "token": email_token})

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def create_refund(self, transaction: str, amount: Optional[int] = None, reason: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"transaction": transaction}
        if amount is not None:
            body["amount"] = amount
        if reason:
            body["merchant_note"] = reason
        return self._request("POST", "/refund", json=body)


class PaystackClientFactory:
    """Caches one PaystackClient per credential fingerprint"""

    def __init__(self):
        self._clients: Dict[str, PaystackClient] = {}
        self._lock = threading.Lock()

    def get(self, secret_key: Optional[str] = None) -> PaystackClient:
        key = secret_key if secret_key is not None else settings.PAYSTACK_SECRET_KEY
        if not key:
            raise PreconditionFailedError("Paystack is not configured")

        fingerprint = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
        with self._lock:
            client = self._clients.get(fingerprint)
            if client is None:
                client = PaystackClient(
                    key,
                    base_url=settings.PAYSTACK_BASE_URL,
                    timeout=settings.PAYSTACK_TIMEOUT_SECONDS
                )
                self._clients[fingerprint] = client
                logger.info(f"Initialized Paystack client for key fingerprint {fingerprint}")
            return client


paystack_clients = PaystackClientFactory()


def verify_paystack_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """Verify x-paystack-signature (HMAC-SHA512 hex of the raw body)

    Raises:
        PreconditionFailedError: If the Paystack secret is not configured
        WebhookSignatureError: If the signature is missing or does not match
    """
    if not secret:
        logger.error("Paystack secret key not configured")
        raise PreconditionFailedError("Paystack is not configured")
    if not signature:
        raise WebhookSignatureError("Missing x-paystack-signature header")

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("Paystack webhook signature verification failed")
        raise WebhookSignatureError("Invalid signature")

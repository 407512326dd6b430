"""Provider webhook API routes

These routes read the raw request body; it must not be parsed before the
signature is verified.
"""
import logging
from typing import Callable
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from faithflow.core.errors import PreconditionFailedError, WebhookSignatureError
from faithflow.db.session import get_db
from faithflow.services.providers import ProviderClients, get_provider_clients
from faithflow.services.webhook_service import (
    process_paystack_webhook, process_platform_paystack_webhook, process_platform_stripe_webhook,
    process_stripe_webhook,
)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def _handle(name: str, run: Callable[[], dict]):
    try:
        return run()
    except (WebhookSignatureError, PreconditionFailedError):
        # Rendered as 400/412 by the BillingError handler, nothing was recorded
        raise
    except Exception as e:
        # The ledger row is FAILED; a non-2xx makes the provider retry
        logger.error(f"{name} webhook processing failed: {e}")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    providers: ProviderClients = Depends(get_provider_clients)
):
    """Church giving events from Stripe"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return _handle("Stripe", lambda: process_stripe_webhook(db, payload, sig_header, providers))


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    db: Session = Depends(get_db),
    providers: ProviderClients = Depends(get_provider_clients)
):
    """Church giving events from Paystack"""
    payload = await request.body()
    signature = request.headers.get("x-paystack-signature")
    return _handle("Paystack", lambda: process_paystack_webhook(db, payload, signature, providers))


@router.post("/platform/stripe")
async def platform_stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Tenant plan subscription events from Stripe"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return _handle("Platform Stripe", lambda: process_platform_stripe_webhook(db, payload, sig_header))


@router.post("/platform/paystack")
async def platform_paystack_webhook(
    request: Request,
    db: Session = Depends(get_db),
    providers: ProviderClients = Depends(get_provider_clients)
):
    """Tenant plan subscription events from Paystack"""
    payload = await request.body()
    signature = request.headers.get("x-paystack-signature")
    return _handle("Platform Paystack", lambda: process_platform_paystack_webhook(db, payload, signature, providers))

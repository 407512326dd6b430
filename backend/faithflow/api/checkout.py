"""Giving and ticket checkout API routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from faithflow.core.security import get_tenant_id
from faithflow.db.session import get_db
from faithflow.schemas.checkout import (
    DonationCheckoutRequest, DonationCheckoutResponse, RecurringCheckoutRequest,
    RecurringCheckoutResponse, TicketCheckoutRequest, TicketCheckoutResponse,
)
from faithflow.services.checkout_service import (
    Err, create_donation_checkout, create_recurring_checkout, create_ticket_checkout,
)
from faithflow.services.providers import ProviderClients, get_provider_clients

router = APIRouter(prefix="/api/giving", tags=["giving"])
logger = logging.getLogger(__name__)


def _error_response(result: Err) -> JSONResponse:
    return JSONResponse(status_code=result.error.status_code, content={"error": result.error.message})


@router.post("/checkout", response_model=DonationCheckoutResponse)
def donation_checkout(
    request: DonationCheckoutRequest,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    providers: ProviderClients = Depends(get_provider_clients)
):
    """Start a one-time donation checkout"""
    result = create_donation_checkout(db, request, tenant_id=tenant_id, providers=providers)
    if isinstance(result, Err):
        return _error_response(result)
    checkout = result.value
    return DonationCheckoutResponse(
        checkout_url=checkout.checkout_url,
        payment_intent_id=checkout.payment_intent_id,
        donation_id=checkout.donation_id,
        provider=checkout.provider,
        provider_ref=checkout.provider_ref,
    )


@router.post("/recurring-checkout", response_model=RecurringCheckoutResponse)
def recurring_checkout(
    request: RecurringCheckoutRequest,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    providers: ProviderClients = Depends(get_provider_clients)
):
    """Start a recurring donation checkout"""
    result = create_recurring_checkout(db, request, tenant_id=tenant_id, providers=providers)
    if isinstance(result, Err):
        return _error_response(result)
    checkout = result.value
    return RecurringCheckoutResponse(
        checkout_url=checkout.checkout_url,
        recurring_donation_id=checkout.recurring_donation_id,
        provider=checkout.provider,
        provider_ref=checkout.provider_ref,
    )


@router.post("/tickets/checkout", response_model=TicketCheckoutResponse)
def ticket_checkout(
    request: TicketCheckoutRequest,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    providers: ProviderClients = Depends(get_provider_clients)
):
    """Start an event ticket checkout"""
    result = create_ticket_checkout(db, request, tenant_id=tenant_id, providers=providers)
    if isinstance(result, Err):
        return _error_response(result)
    checkout = result.value
    return TicketCheckoutResponse(
        checkout_url=checkout.checkout_url,
        payment_intent_id=checkout.payment_intent_id,
        order_id=checkout.order_id,
        provider=checkout.provider,
        provider_ref=checkout.provider_ref,
    )

"""Refund API routes"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from faithflow.core.security import require_tenant_id
from faithflow.db.session import get_db
from faithflow.schemas.billing import RefundRequest, RefundResponse
from faithflow.services.providers import ProviderClients, get_provider_clients
from faithflow.services.refund_service import create_refund_for_donation

router = APIRouter(prefix="/api/giving/refunds", tags=["refunds"])
logger = logging.getLogger(__name__)


@router.post("/", response_model=RefundResponse)
def create_refund(
    request: RefundRequest,
    tenant_id: int = Depends(require_tenant_id),
    db: Session = Depends(get_db),
    providers: ProviderClients = Depends(get_provider_clients)
):
    """Refund a completed donation, fully or partially"""
    refund = create_refund_for_donation(
        db,
        request.donation_id,
        amount=request.amount,
        reason=request.reason,
        tenant_id=tenant_id,
        providers=providers,
    )
    return refund

"""Checkout creation for donations, recurring gifts and event tickets.

Each checkout writes its local record before calling the gateway, so a gateway
failure always leaves a FAILED intent (or CANCELED recurring gift / order)
rather than an orphan. Outcomes are returned as Ok/Err instead of raised.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar, Union
from sqlalchemy import func
from sqlalchemy.orm import Session

from faithflow.core.errors import BadRequestError, BillingError, ForbiddenError, GatewayError, NotFoundError, PreconditionFailedError
from faithflow.core.metrics import checkouts_counter
from faithflow.models.campaign import Campaign
from faithflow.models.church import Church
from faithflow.models.donation import Donation
from faithflow.models.event import Event
from faithflow.models.event_ticket_order import EventTicketOrder
from faithflow.models.event_ticket_type import EventTicketType
from faithflow.models.fund import Fund
from faithflow.models.fundraiser_page import FundraiserPage
from faithflow.models.member import Member
from faithflow.models.payment_intent import PaymentIntent
from faithflow.models.pledge import Pledge
from faithflow.models.recurring_donation import RecurringDonation
from faithflow.schemas.checkout import DonationCheckoutRequest, RecurringCheckoutRequest, TicketCheckoutRequest
from faithflow.services.providers import ProviderClients, get_provider_clients
from faithflow.services.stripe_service import get_stripe_value
from faithflow.utils.currency import ensure_paystack_currency_supported, to_minor_units
from faithflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

MAX_TICKETS_PER_ORDER = 20

STRIPE_RECURRING_INTERVALS = {
    "WEEKLY": {"interval": "week", "interval_count": 1},
    "MONTHLY": {"interval": "month", "interval_count": 1},
    "QUARTERLY": {"interval": "month", "interval_count": 3},
    "YEARLY": {"interval": "year", "interval_count": 1},
}

PAYSTACK_PLAN_INTERVALS = {
    "WEEKLY": "weekly",
    "MONTHLY": "monthly",
    "QUARTERLY": "quarterly",
    "YEARLY": "annually",
}


# ============================================================================
# RESULT TYPE
# ============================================================================

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class CheckoutError:
    message: str
    status_code: int

    @classmethod
    def from_exception(cls, exc: BillingError) -> "CheckoutError":
        return cls(message=exc.message, status_code=exc.status_code)


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    provider: str
    provider_ref: str
    payment_intent_id: Optional[int] = None
    donation_id: Optional[int] = None
    recurring_donation_id: Optional[int] = None
    order_id: Optional[int] = None


def placeholder_provider_ref() -> str:
    """Unique stand-in until the gateway returns a real session/reference"""
    return f"pending-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _rejected(provider: str, kind: str, exc: BillingError) -> Err:
    logger.info(f"Rejected {provider} {kind} checkout: {exc.message}")
    checkouts_counter.labels(provider=provider, kind=kind, status="rejected").inc()
    return Err(CheckoutError.from_exception(exc))


# ============================================================================
# VALIDATION (no writes)
# ============================================================================

def resolve_church(
    db: Session,
    church_id: Optional[int],
    church_slug: Optional[str],
    tenant_id: Optional[int] = None
) -> Church:
    if not church_id and not church_slug:
        raise BadRequestError("church_id or church_slug is required")

    query = db.query(Church)
    if church_id:
        query = query.filter(Church.id == church_id)
    if church_slug:
        query = query.filter(Church.slug == church_slug)
    church = query.first()
    if not church:
        raise NotFoundError("Church not found")
    if tenant_id is not None and church.tenant_id != tenant_id:
        raise ForbiddenError("Church not found")
    return church


def _ensure_owned(db: Session, model, object_id: Optional[int], church_id: int, label: str) -> None:
    if object_id is None:
        return
    exists = db.query(model.id).filter(model.id == object_id, model.church_id == church_id).first()
    if not exists:
        raise NotFoundError(f"{label} not found")


def _ensure_gateway_inputs(provider: str, email: Optional[str], success_url: Optional[str], email_field: str) -> None:
    if provider == "MANUAL":
        raise BadRequestError("Manual provider is not supported for checkout")
    if provider == "PAYSTACK" and not email:
        raise BadRequestError(f"{email_field} is required for Paystack")
    if not success_url:
        label = "Stripe" if provider == "STRIPE" else "Paystack"
        raise BadRequestError(f"success_url is required for {label}")


def _gateway_client(providers: ProviderClients, provider: str):
    return providers.stripe() if provider == "STRIPE" else providers.paystack()


def _reserved_quantity(db: Session, *criteria) -> int:
    total = db.query(func.coalesce(func.sum(EventTicketOrder.quantity), 0)).filter(
        EventTicketOrder.status.in_(["PENDING", "PAID"]),
        *criteria
    ).scalar()
    return int(total or 0)


def ensure_ticket_capacity(db: Session, event: Event, ticket_type: EventTicketType, quantity: int) -> None:
    """Advisory capacity check over PENDING+PAID orders (not a row lock)"""
    if ticket_type.capacity:
        reserved = _reserved_quantity(db, EventTicketOrder.ticket_type_id == ticket_type.id)
        if reserved + quantity > ticket_type.capacity:
            raise PreconditionFailedError("Ticket capacity reached")
    if event.capacity:
        reserved = _reserved_quantity(db, EventTicketOrder.event_id == event.id)
        if reserved + quantity > event.capacity:
            raise PreconditionFailedError("Event capacity reached")


# ============================================================================
# GATEWAY SESSIONS
# ============================================================================

def _stripe_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    # Stripe metadata values are strings
    out = {}
    for key, value in values.items():
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = "" if value is None else str(value)
    return out


def _stripe_session_result(session) -> Tuple[str, str]:
    url = get_stripe_value(session, "url")
    session_id = get_stripe_value(session, "id")
    if not url or not session_id:
        raise GatewayError("Stripe checkout URL missing")
    return url, session_id


def _open_payment_session(
    client,
    provider: str,
    reference: str,
    amount: Decimal,
    currency: str,
    email: Optional[str],
    success_url: str,
    cancel_url: Optional[str],
    metadata: Dict[str, Any],
    product_name: str
) -> Tuple[str, str]:
    """One-time payment on either gateway. Returns (checkout_url, provider_ref)."""
    if provider == "STRIPE":
        stripe_meta = _stripe_metadata(metadata)
        params = dict(
            mode="payment",
            client_reference_id=reference,
            success_url=success_url,
            cancel_url=cancel_url or success_url,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(amount, currency),
                    "product_data": {"name": product_name},
                },
            }],
            payment_intent_data={"metadata": stripe_meta},
            metadata=stripe_meta,
        )
        if email:
            params["customer_email"] = email
        return _stripe_session_result(client.create_checkout_session(**params))

    data = client.initialize_transaction(
        amount=to_minor_units(amount, currency),
        email=email,
        currency=currency,
        reference=reference,
        callback_url=success_url,
        metadata=metadata,
    )
    return data["authorization_url"], data.get("reference") or reference


def _fail_intent(db: Session, intent_id: int, order_id: Optional[int] = None) -> None:
    """Error-path cleanup: the intent becomes FAILED (and its order CANCELED)"""
    db.rollback()
    intent = db.get(PaymentIntent, intent_id)
    if intent is not None and intent.status != "SUCCEEDED":
        intent.status = "FAILED"
    if order_id is not None:
        order = db.get(EventTicketOrder, order_id)
        if order is not None and order.status == "PENDING":
            order.status = "CANCELED"
    db.commit()


# ============================================================================
# DONATION CHECKOUT
# ============================================================================

def create_donation_checkout(
    db: Session,
    request: DonationCheckoutRequest,
    tenant_id: Optional[int] = None,
    providers: Optional[ProviderClients] = None
) -> Result[CheckoutResult, CheckoutError]:
    """Create a one-time donation checkout.

    Args:
        db: Database session
        request: Checkout request
        tenant_id: Tenant from the identity proxy, when present
        providers: Gateway clients (defaults to the settings-backed ones)

    Returns:
        Ok(CheckoutResult) or Err(CheckoutError)
    """
    providers = providers or get_provider_clients()
    provider = request.provider

    try:
        _ensure_gateway_inputs(provider, request.donor_email, request.success_url, "donor_email")
        church = resolve_church(db, request.church_id, request.church_slug, tenant_id)
        if provider == "PAYSTACK":
            ensure_paystack_currency_supported(request.amount, request.currency, church.country_code)
        _ensure_owned(db, Member, request.member_id, church.id, "Member")
        _ensure_owned(db, Fund, request.fund_id, church.id, "Fund")
        _ensure_owned(db, Campaign, request.campaign_id, church.id, "Campaign")
        _ensure_owned(db, FundraiserPage, request.fundraiser_page_id, church.id, "Fundraiser page")
        _ensure_owned(db, Pledge, request.pledge_id, church.id, "Pledge")
        _ensure_owned(db, RecurringDonation, request.recurring_donation_id, church.id, "Recurring donation")
        client = _gateway_client(providers, provider)
    except BillingError as e:
        return _rejected(provider, "donation", e)

    intent = PaymentIntent(
        church_id=church.id,
        member_id=request.member_id,
        amount=request.amount,
        currency=request.currency,
        provider=provider,
        provider_ref=placeholder_provider_ref(),
        status="REQUIRES_ACTION",
        fund_id=request.fund_id,
        campaign_id=request.campaign_id,
        fundraiser_page_id=request.fundraiser_page_id,
        is_anonymous=request.is_anonymous,
        donor_name=request.donor_name,
        donor_email=request.donor_email,
        donor_phone=request.donor_phone,
        extra={"pledge_id": request.pledge_id, "recurring_donation_id": request.recurring_donation_id},
    )
    db.add(intent)
    db.commit()
    intent_id = intent.id

    completed = False
    try:
        checkout_url, provider_ref = _open_payment_session(
            client,
            provider,
            reference=intent.reference,
            amount=request.amount,
            currency=request.currency,
            email=request.donor_email,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            metadata={
                "payment_intent_id": intent.reference,
                "church_id": church.id,
                "fund_id": request.fund_id,
                "campaign_id": request.campaign_id,
                "fundraiser_page_id": request.fundraiser_page_id,
                "is_anonymous": request.is_anonymous,
            },
            product_name="Fund Donation" if request.fund_id else "Donation",
        )

        intent.provider_ref = provider_ref
        intent.checkout_url = checkout_url
        intent.status = "PROCESSING"
        donation = Donation(
            church_id=church.id,
            member_id=request.member_id,
            fund_id=request.fund_id,
            campaign_id=request.campaign_id,
            fundraiser_page_id=request.fundraiser_page_id,
            pledge_id=request.pledge_id,
            recurring_donation_id=request.recurring_donation_id,
            payment_intent_id=intent.id,
            amount=request.amount,
            currency=request.currency,
            status="PENDING",
            provider=provider,
            provider_ref=provider_ref,
            is_anonymous=request.is_anonymous,
            donor_name=request.donor_name,
            donor_email=request.donor_email,
            donor_phone=request.donor_phone,
        )
        db.add(donation)
        db.commit()
        completed = True
    except BillingError as e:
        logger.error(f"{provider} donation checkout failed for intent {intent_id}: {e.message}")
        checkouts_counter.labels(provider=provider, kind="donation", status="failed").inc()
        return Err(CheckoutError.from_exception(e))
    finally:
        if not completed:
            _fail_intent(db, intent_id)

    checkouts_counter.labels(provider=provider, kind="donation", status="created").inc()
    logger.info(f"Created {provider} donation checkout: intent {intent.id}, donation {donation.id}")
    return Ok(CheckoutResult(
        checkout_url=checkout_url,
        provider=provider,
        provider_ref=provider_ref,
        payment_intent_id=intent.id,
        donation_id=donation.id,
    ))


# ============================================================================
# RECURRING CHECKOUT
# ============================================================================

def _open_recurring_session(client, recurring: RecurringDonation, request: RecurringCheckoutRequest, church: Church) -> Tuple[str, str]:
    metadata = {"recurring_donation_id": recurring.reference, "church_id": church.id, "is_anonymous": request.is_anonymous}

    if request.provider == "STRIPE":
        stripe_meta = _stripe_metadata(metadata)
        params = dict(
            mode="subscription",
            client_reference_id=recurring.reference,
            success_url=request.success_url,
            cancel_url=request.cancel_url or request.success_url,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": request.currency.lower(),
                    "unit_amount": to_minor_units(request.amount, request.currency),
                    "recurring": STRIPE_RECURRING_INTERVALS[request.interval],
                    "product_data": {"name": "Recurring Donation"},
                },
            }],
            subscription_data={"metadata": stripe_meta},
            metadata=stripe_meta,
        )
        if request.donor_email:
            params["customer_email"] = request.donor_email
        return _stripe_session_result(client.create_checkout_session(**params))

    plan_code = client.create_plan(
        name=f"Recurring Donation {recurring.reference}",
        interval=PAYSTACK_PLAN_INTERVALS[request.interval],
        amount=to_minor_units(request.amount, request.currency),
        currency=request.currency,
        description=f"FaithFlow recurring donation for church {church.id}",
    )
    recurring.provider_plan_code = plan_code
    data = client.initialize_transaction(
        amount=to_minor_units(request.amount, request.currency),
        email=request.donor_email,
        currency=request.currency,
        reference=recurring.reference,
        callback_url=request.success_url,
        metadata=metadata,
        plan=plan_code,
    )
    return data["authorization_url"], plan_code


def create_recurring_checkout(
    db: Session,
    request: RecurringCheckoutRequest,
    tenant_id: Optional[int] = None,
    providers: Optional[ProviderClients] = None
) -> Result[CheckoutResult, CheckoutError]:
    """Create a recurring donation checkout. The gift stays PAUSED until a webhook confirms it."""
    providers = providers or get_provider_clients()
    provider = request.provider

    try:
        _ensure_gateway_inputs(provider, request.donor_email, request.success_url, "donor_email")
        church = resolve_church(db, request.church_id, request.church_slug, tenant_id)
        if provider == "PAYSTACK":
            ensure_paystack_currency_supported(request.amount, request.currency, church.country_code)
        _ensure_owned(db, Member, request.member_id, church.id, "Member")
        _ensure_owned(db, Fund, request.fund_id, church.id, "Fund")
        _ensure_owned(db, Campaign, request.campaign_id, church.id, "Campaign")
        client = _gateway_client(providers, provider)
    except BillingError as e:
        return _rejected(provider, "recurring", e)

    recurring = RecurringDonation(
        church_id=church.id,
        member_id=request.member_id,
        fund_id=request.fund_id,
        campaign_id=request.campaign_id,
        amount=request.amount,
        currency=request.currency,
        interval=request.interval,
        status="PAUSED",
        provider=provider,
        is_anonymous=request.is_anonymous,
        donor_name=request.donor_name,
        donor_email=request.donor_email,
        donor_phone=request.donor_phone,
        start_at=utcnow(),
        next_charge_at=None,
    )
    db.add(recurring)
    db.commit()
    recurring_id = recurring.id

    completed = False
    try:
        checkout_url, provider_ref = _open_recurring_session(client, recurring, request, church)
        recurring.provider_ref = provider_ref
        db.commit()
        completed = True
    except BillingError as e:
        logger.error(f"{provider} recurring checkout failed for recurring donation {recurring_id}: {e.message}")
        checkouts_counter.labels(provider=provider, kind="recurring", status="failed").inc()
        return Err(CheckoutError.from_exception(e))
    finally:
        if not completed:
            db.rollback()
            failed = db.get(RecurringDonation, recurring_id)
            if failed is not None:
                failed.status = "CANCELED"
            db.commit()

    checkouts_counter.labels(provider=provider, kind="recurring", status="created").inc()
    logger.info(f"Created {provider} recurring checkout for recurring donation {recurring.id}")
    return Ok(CheckoutResult(
        checkout_url=checkout_url,
        provider=provider,
        provider_ref=provider_ref,
        recurring_donation_id=recurring.id,
    ))


# ============================================================================
# TICKET CHECKOUT
# ============================================================================

def create_ticket_checkout(
    db: Session,
    request: TicketCheckoutRequest,
    tenant_id: Optional[int] = None,
    providers: Optional[ProviderClients] = None
) -> Result[CheckoutResult, CheckoutError]:
    """Reserve tickets and open a checkout for them"""
    providers = providers or get_provider_clients()
    provider = request.provider
    quantity = max(1, min(request.quantity, MAX_TICKETS_PER_ORDER))

    try:
        _ensure_gateway_inputs(provider, request.purchaser_email, request.success_url, "purchaser_email")
        event = db.get(Event, request.event_id)
        if not event:
            raise NotFoundError("Event not found")
        church = db.get(Church, event.church_id)
        if tenant_id is not None and church.tenant_id != tenant_id:
            raise ForbiddenError("Event not found")
        ticket_type = db.query(EventTicketType).filter(
            EventTicketType.id == request.ticket_type_id,
            EventTicketType.event_id == event.id,
            EventTicketType.is_active.is_(True)
        ).first()
        if not ticket_type:
            raise NotFoundError("Ticket type not found")
        _ensure_owned(db, Member, request.member_id, church.id, "Member")

        amount = Decimal(ticket_type.price) * quantity
        currency = ticket_type.currency.upper()
        if provider == "PAYSTACK":
            ensure_paystack_currency_supported(amount, currency, church.country_code)
        client = _gateway_client(providers, provider)
        ensure_ticket_capacity(db, event, ticket_type, quantity)
    except BillingError as e:
        return _rejected(provider, "ticket", e)

    order = EventTicketOrder(
        church_id=church.id,
        event_id=event.id,
        ticket_type_id=ticket_type.id,
        member_id=request.member_id,
        purchaser_name=request.purchaser_name,
        purchaser_email=request.purchaser_email,
        purchaser_phone=request.purchaser_phone,
        quantity=quantity,
        amount=amount,
        currency=currency,
        provider=provider,
        status="PENDING",
    )
    db.add(order)
    db.flush()

    intent = PaymentIntent(
        church_id=church.id,
        member_id=request.member_id,
        amount=amount,
        currency=currency,
        provider=provider,
        provider_ref=placeholder_provider_ref(),
        status="REQUIRES_ACTION",
        ticket_order_id=order.id,
        donor_name=request.purchaser_name,
        donor_email=request.purchaser_email,
        donor_phone=request.purchaser_phone,
        extra={"event_id": event.id, "ticket_type_id": ticket_type.id, "quantity": quantity},
    )
    db.add(intent)
    db.commit()
    intent_id, order_id = intent.id, order.id

    completed = False
    try:
        checkout_url, provider_ref = _open_payment_session(
            client,
            provider,
            reference=intent.reference,
            amount=amount,
            currency=currency,
            email=request.purchaser_email,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            metadata={
                "payment_intent_id": intent.reference,
                "church_id": church.id,
                "ticket_order_id": order.id,
                "is_anonymous": False,
            },
            product_name=f"{ticket_type.name} x{quantity}",
        )
        intent.provider_ref = provider_ref
        intent.checkout_url = checkout_url
        intent.status = "PROCESSING"
        order.provider_ref = provider_ref
        db.commit()
        completed = True
    except BillingError as e:
        logger.error(f"{provider} ticket checkout failed for order {order_id}: {e.message}")
        checkouts_counter.labels(provider=provider, kind="ticket", status="failed").inc()
        return Err(CheckoutError.from_exception(e))
    finally:
        if not completed:
            _fail_intent(db, intent_id, order_id=order_id)

    checkouts_counter.labels(provider=provider, kind="ticket", status="created").inc()
    logger.info(f"Created {provider} ticket checkout: order {order.id} ({quantity} tickets)")
    return Ok(CheckoutResult(
        checkout_url=checkout_url,
        provider=provider,
        provider_ref=provider_ref,
        payment_intent_id=intent.id,
        order_id=order.id,
    ))

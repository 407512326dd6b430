"""Pydantic schemas for giving and ticket checkout"""
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator

Provider = Literal["STRIPE", "PAYSTACK", "MANUAL"]
Interval = Literal["WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY"]


class DonationCheckoutRequest(BaseModel):
    church_id: Optional[int] = None
    church_slug: Optional[str] = None
    amount: Decimal = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    provider: Provider
    donor_name: Optional[str] = None
    donor_email: Optional[str] = None
    donor_phone: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    member_id: Optional[int] = None
    fund_id: Optional[int] = None
    campaign_id: Optional[int] = None
    fundraiser_page_id: Optional[int] = None
    pledge_id: Optional[int] = None
    recurring_donation_id: Optional[int] = None
    is_anonymous: bool = False

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class RecurringCheckoutRequest(BaseModel):
    church_id: Optional[int] = None
    church_slug: Optional[str] = None
    amount: Decimal = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    interval: Interval
    provider: Provider
    donor_name: Optional[str] = None
    donor_email: Optional[str] = None
    donor_phone: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    member_id: Optional[int] = None
    fund_id: Optional[int] = None
    campaign_id: Optional[int] = None
    is_anonymous: bool = False

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class TicketCheckoutRequest(BaseModel):
    event_id: int
    ticket_type_id: int
    quantity: int = 1  # clamped to 1..20 by the service
    provider: Provider
    member_id: Optional[int] = None
    purchaser_name: Optional[str] = None
    purchaser_email: Optional[str] = None
    purchaser_phone: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class DonationCheckoutResponse(BaseModel):
    checkout_url: str
    payment_intent_id: int
    donation_id: int
    provider: str
    provider_ref: str


class RecurringCheckoutResponse(BaseModel):
    checkout_url: str
    recurring_donation_id: int
    provider: str
    provider_ref: str


class TicketCheckoutResponse(BaseModel):
    checkout_url: str
    payment_intent_id: int
    order_id: int
    provider: str
    provider_ref: str

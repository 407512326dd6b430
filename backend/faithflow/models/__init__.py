"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from faithflow.models.base import Base
from faithflow.models.tenant import Tenant
from faithflow.models.church import Church
from faithflow.models.campus import Campus
from faithflow.models.member import Member
from faithflow.models.staff_membership import StaffMembership
from faithflow.models.expense import Expense
from faithflow.models.fund import Fund
from faithflow.models.campaign import Campaign
from faithflow.models.fundraiser_page import FundraiserPage
from faithflow.models.pledge import Pledge
from faithflow.models.event import Event
from faithflow.models.event_ticket_type import EventTicketType
from faithflow.models.event_ticket_order import EventTicketOrder
from faithflow.models.event_rsvp import EventRsvp
from faithflow.models.recurring_donation import RecurringDonation
from faithflow.models.payment_intent import PaymentIntent
from faithflow.models.donation import Donation
from faithflow.models.donation_receipt import DonationReceipt
from faithflow.models.refund import Refund
from faithflow.models.dispute import Dispute
from faithflow.models.webhook_event import WebhookEvent
from faithflow.models.subscription_plan import SubscriptionPlan
from faithflow.models.subscription_plan_feature import SubscriptionPlanFeature
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.models.audit_log import AuditLog
from faithflow.models.communication_schedule import CommunicationSchedule

# Export all for convenience
__all__ = [
    "Base", "Tenant", "Church", "Campus", "Member", "StaffMembership", "Expense",
    "Fund", "Campaign", "FundraiserPage", "Pledge",
    "Event", "EventTicketType", "EventTicketOrder", "EventRsvp",
    "RecurringDonation", "PaymentIntent", "Donation", "DonationReceipt",
    "Refund", "Dispute", "WebhookEvent",
    "SubscriptionPlan", "SubscriptionPlanFeature", "TenantSubscription",
    "AuditLog", "CommunicationSchedule",
]

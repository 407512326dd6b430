"""Service-layer exceptions mapped to HTTP statuses by the API layer"""


class BillingError(Exception):
    """Base class for errors surfaced to API clients"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequestError(BillingError):
    """Invalid input, rejected before any write"""
    status_code = 400


class ForbiddenError(BillingError):
    status_code = 403


class NotFoundError(BillingError):
    status_code = 404


class PreconditionFailedError(BillingError):
    """Plan limits, capacity, unconfigured providers"""
    status_code = 412


class GatewayError(BillingError):
    """Payment provider call failed or returned a non-success payload"""
    status_code = 502


class WebhookSignatureError(BillingError):
    """Webhook signature missing or invalid. Never recorded in the ledger."""
    status_code = 400

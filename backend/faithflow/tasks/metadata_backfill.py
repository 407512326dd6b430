"""Backfill structured provider columns on tenant subscriptions from legacy extra blobs"""
import logging
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy.orm import Session

from faithflow.core.errors import PreconditionFailedError
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.services.providers import ProviderClients, get_provider_clients
from faithflow.services.stripe_service import get_stripe_value, stripe_id

logger = logging.getLogger(__name__)

PROVIDER_COLUMNS = ("provider_customer_id", "provider_price_id", "provider_subscription_id", "provider_email_token")

STRIPE_PATHS = {
    "provider_subscription_id": (("stripe_subscription_id",), ("id",), ("subscription",), ("data", "subscription")),
    "provider_customer_id": (("stripe_customer_id",), ("customer",), ("data", "object", "customer"), ("data", "customer")),
    "provider_price_id": (
        ("stripe_price_id",),
        ("items", "data", "0", "price", "id"),
        ("data", "object", "items", "data", "0", "price", "id"),
        ("plan", "id"),
    ),
}

PAYSTACK_PATHS = {
    "provider_subscription_id": (
        ("paystack_subscription_code",),
        ("subscription_code",),
        ("data", "subscription", "subscription_code"),
        ("data", "subscription_code"),
    ),
    "provider_customer_id": (
        ("paystack_customer_code",),
        ("customer_code",),
        ("data", "customer", "customer_code"),
        ("customer", "customer_code"),
    ),
    "provider_price_id": (("paystack_plan_code",), ("plan_code",), ("data", "plan", "plan_code"), ("plan", "plan_code")),
    "provider_email_token": (("paystack_email_token",), ("email_token",), ("data", "email_token")),
}


def read_string(source: Any, paths: Sequence[Sequence[str]]) -> Optional[str]:
    """First non-blank string found along any of the key paths"""
    for path in paths:
        cursor = source
        for key in path:
            if isinstance(cursor, dict):
                cursor = cursor.get(key)
            elif isinstance(cursor, list) and key.isdigit() and int(key) < len(cursor):
                cursor = cursor[int(key)]
            else:
                cursor = None
                break
        if isinstance(cursor, str) and cursor.strip():
            return cursor.strip()
    return None


def _current_columns(record: TenantSubscription) -> Dict[str, Optional[str]]:
    return {column: getattr(record, column) for column in PROVIDER_COLUMNS}


def normalize_subscription_columns(record: TenantSubscription) -> Dict[str, Optional[str]]:
    """Stored columns, filled in from extra where empty. The provider ref stands in for the subscription id."""
    extra = record.extra if isinstance(record.extra, dict) else {}
    paths = STRIPE_PATHS if record.provider == "STRIPE" else PAYSTACK_PATHS
    normalized = _current_columns(record)
    for column, column_paths in paths.items():
        if not normalized.get(column):
            normalized[column] = read_string(extra, column_paths)
    if not normalized.get("provider_subscription_id") and record.provider_ref:
        normalized["provider_subscription_id"] = record.provider_ref
    return normalized


def _fill_from_stripe(record: TenantSubscription, normalized: Dict[str, Optional[str]], providers: ProviderClients) -> None:
    if not (record.provider_ref or "").startswith("sub_"):
        return
    subscription = providers.stripe().retrieve_subscription(record.provider_ref)
    items = get_stripe_value(get_stripe_value(subscription, "items", {}), "data", [])
    price_id = stripe_id(get_stripe_value(items[0], "price")) if items else None
    customer_id = stripe_id(get_stripe_value(subscription, "customer"))
    if customer_id:
        normalized["provider_customer_id"] = customer_id
    if get_stripe_value(subscription, "id"):
        normalized["provider_subscription_id"] = get_stripe_value(subscription, "id")
    if price_id:
        normalized["provider_price_id"] = price_id


def _fill_from_paystack(record: TenantSubscription, normalized: Dict[str, Optional[str]], providers: ProviderClients) -> None:
    if not record.provider_ref:
        return
    data = providers.paystack().fetch_subscription(record.provider_ref)
    values = {
        "provider_customer_id": read_string(data, [("customer", "customer_code")]),
        "provider_price_id": read_string(data, [("plan", "plan_code")]),
        "provider_subscription_id": read_string(data, [("subscription_code",)]),
        "provider_email_token": read_string(data, [("email_token",)]),
    }
    for column, value in values.items():
        if value:
            normalized[column] = value


def run_subscription_metadata_backfill(
    db: Session,
    limit: int = 250,
    dry_run: bool = False,
    provider: Optional[str] = None,
    providers: Optional[ProviderClients] = None
) -> Dict[str, Any]:
    """Fill provider_customer_id/price/subscription/email_token on STRIPE and PAYSTACK rows.

    When the customer id is still missing after reading extra, the provider API
    is asked (Stripe for sub_ refs, Paystack GET /subscription/{code}). Rows whose
    normalized columns equal the stored ones count as skipped.
    """
    providers = providers or get_provider_clients()
    query = db.query(TenantSubscription).filter(TenantSubscription.provider.in_(["STRIPE", "PAYSTACK"]))
    if provider:
        query = query.filter(TenantSubscription.provider == provider.upper())
    records = query.order_by(TenantSubscription.created_at, TenantSubscription.id).limit(limit).all()

    updated = 0
    skipped = 0
    changed_ids: List[int] = []
    errors: List[Dict[str, Any]] = []

    for record in records:
        record_id = record.id
        try:
            normalized = normalize_subscription_columns(record)
            if not normalized.get("provider_customer_id"):
                try:
                    if record.provider == "STRIPE":
                        _fill_from_stripe(record, normalized, providers)
                    else:
                        _fill_from_paystack(record, normalized, providers)
                except PreconditionFailedError:
                    # Provider not configured, keep what extra gave us
                    pass

            if normalized == _current_columns(record):
                skipped += 1
                continue

            if not dry_run:
                for column, value in normalized.items():
                    setattr(record, column, value)
                db.commit()
            changed_ids.append(record_id)
            updated += 1
        except Exception as e:
            db.rollback()
            logger.error(f"Metadata backfill failed for subscription {record_id}: {e}")
            errors.append({"subscription_id": record_id, "message": str(e)})

    logger.info(f"Metadata backfill: scanned {len(records)}, updated {updated}, skipped {skipped}, failed {len(errors)}")
    return {
        "scanned": len(records),
        "updated": updated,
        "skipped": skipped,
        "failed": len(errors),
        "changed_ids": changed_ids,
        "errors": errors,
        "dry_run": dry_run,
    }

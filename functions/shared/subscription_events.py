"""
Billing event normalization.

Turns a raw (signature-verified) Stripe event payload into a flat
SubscriptionEvent carrying only what tier derivation needs. Invoice events do
not carry subscription state, so they are resolved through one extra
subscription fetch.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from shared.constants import USER_ID_METADATA_KEY
from shared.errors import MalformedEventError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    OTHER = "other"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    OTHER = "other"


STRIPE_EVENT_TYPES = {
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventType.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventType.INVOICE_PAYMENT_FAILED,
}

SUBSCRIPTION_EVENT_TYPES = (
    EventType.SUBSCRIPTION_CREATED,
    EventType.SUBSCRIPTION_UPDATED,
    EventType.SUBSCRIPTION_DELETED,
)
INVOICE_EVENT_TYPES = (
    EventType.INVOICE_PAYMENT_SUCCEEDED,
    EventType.INVOICE_PAYMENT_FAILED,
)

_KNOWN_STATUSES = {status.value: status for status in SubscriptionStatus if status is not SubscriptionStatus.OTHER}

# Returns the subscription object for a subscription ID
SubscriptionFetcher = Callable[[str], Mapping]


@dataclass(frozen=True)
class SubscriptionEvent:
    """Fields of one webhook delivery that matter for tier derivation."""

    event_type: EventType
    stripe_type: str = ""
    event_id: Optional[str] = None
    created: Optional[int] = None
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.OTHER
    raw_status: Optional[str] = None
    price_id: Optional[str] = None
    price_amount_cents: Optional[int] = None
    trial_end: Optional[int] = None
    cancel_at: Optional[int] = None
    canceled_at: Optional[int] = None
    current_period_end: Optional[int] = None


def parse_status(raw_status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status string onto SubscriptionStatus."""
    if not raw_status:
        return SubscriptionStatus.OTHER
    return _KNOWN_STATUSES.get(raw_status, SubscriptionStatus.OTHER)


def _optional_int(obj: Mapping, key: str) -> Optional[int]:
    value = obj.get(key)
    if value is None:
        return None
    # bool is an int subclass; a True timestamp is never valid
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventError(f"Field '{key}' must be an integer")
    return value


def _optional_str(obj: Mapping, key: str) -> Optional[str]:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedEventError(f"Field '{key}' must be a string")
    return value or None


def _mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def _first_item(subscription: Mapping) -> Mapping:
    items = _mapping(subscription.get("items")).get("data") or []
    if not isinstance(items, list) or not items:
        return {}
    return _mapping(items[0])


def extract_subscription_fields(subscription: Mapping) -> dict:
    """Pull status, price and timestamp fields out of a Stripe subscription."""
    if not isinstance(subscription, Mapping):
        raise MalformedEventError("Subscription payload must be an object")

    item = _first_item(subscription)
    price = _mapping(item.get("price"))
    metadata = _mapping(subscription.get("metadata"))

    current_period_end = _optional_int(subscription, "current_period_end")
    if current_period_end is None:
        # Newer API versions only report billing periods on subscription items
        current_period_end = _optional_int(item, "current_period_end")

    raw_status = _optional_str(subscription, "status")
    user_id = metadata.get(USER_ID_METADATA_KEY)

    return {
        "user_id": user_id if isinstance(user_id, str) and user_id else None,
        "subscription_id": _optional_str(subscription, "id"),
        "status": parse_status(raw_status),
        "raw_status": raw_status,
        "price_id": _optional_str(price, "id"),
        "price_amount_cents": _optional_int(price, "unit_amount"),
        "trial_end": _optional_int(subscription, "trial_end"),
        "cancel_at": _optional_int(subscription, "cancel_at"),
        "canceled_at": _optional_int(subscription, "canceled_at"),
        "current_period_end": current_period_end,
    }


def invoice_subscription_id(invoice: Mapping) -> Optional[str]:
    """Subscription referenced by an invoice, as a plain ID.

    Accepts the legacy top-level ``subscription`` field (string or expanded
    object) and the ``parent.subscription_details.subscription`` location used
    by newer API versions.
    """
    reference = invoice.get("subscription")
    if reference is None:
        details = _mapping(_mapping(invoice.get("parent")).get("subscription_details"))
        reference = details.get("subscription")

    if isinstance(reference, Mapping):
        reference = reference.get("id")
    if reference is None or reference == "":
        return None
    if not isinstance(reference, str):
        raise MalformedEventError("Invoice subscription reference must be a string or object")
    return reference


def normalize_event(raw: Any, fetch_subscription: Optional[SubscriptionFetcher] = None) -> SubscriptionEvent:
    """
    Normalize a raw Stripe event.

    Args:
        raw: Decoded event payload
        fetch_subscription: Callable returning a subscription by ID; required
            to resolve invoice events

    Returns:
        SubscriptionEvent. Unknown event types come back as EventType.OTHER
        with no derived fields.

    Raises:
        MalformedEventError: payload is not a recognizable Stripe event
    """
    if not isinstance(raw, Mapping):
        raise MalformedEventError("Event payload must be an object")

    stripe_type = raw.get("type")
    if not isinstance(stripe_type, str) or not stripe_type:
        raise MalformedEventError("Event is missing its type")

    data_object = _mapping(raw.get("data")).get("object")
    if not isinstance(data_object, Mapping):
        raise MalformedEventError("Event is missing data.object")

    event_type = STRIPE_EVENT_TYPES.get(stripe_type, EventType.OTHER)
    envelope = {
        "event_type": event_type,
        "stripe_type": stripe_type,
        "event_id": _optional_str(raw, "id"),
        "created": _optional_int(raw, "created"),
    }

    if event_type == EventType.OTHER:
        return SubscriptionEvent(**envelope)

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return SubscriptionEvent(**envelope, **extract_subscription_fields(data_object))

    subscription_id = invoice_subscription_id(data_object)
    if not subscription_id:
        logger.info(f"Invoice {data_object.get('id')} has no subscription")
        return SubscriptionEvent(**envelope)

    if fetch_subscription is None:
        raise ValueError("fetch_subscription is required to normalize invoice events")

    subscription = fetch_subscription(subscription_id)
    fields = extract_subscription_fields(subscription)
    fields["subscription_id"] = fields["subscription_id"] or subscription_id
    return SubscriptionEvent(**envelope, **fields)

"""
Subscription tier derivation.

resolve_tier() is a pure function of one normalized event and the current
time. It never looks at the stored profile: every event recomputes the tier
and timestamp fields from scratch, so replaying an event writes the same
fields again.

Out-of-order delivery is NOT handled here. A stale "active" update that
arrives after "deleted" resurrects the paid tier; see
shared.billing_events.BillingEventLog (is_stale / claim_sequence) for the opt-in guard.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shared.constants import PREMIUM_MIN_AMOUNT_CENTS, PRO_MIN_AMOUNT_CENTS
from shared.subscription_events import SubscriptionEvent, SubscriptionStatus

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    FREE = "free"
    TRIAL = "trial"
    PRO = "pro"
    PREMIUM = "premium"


@dataclass(frozen=True)
class TierResolution:
    """Tier plus the timestamp fields to persist (Unix seconds).

    subscription_expires_at of None means "leave the stored value alone";
    the other two timestamps of None mean "clear it".
    """

    tier: Tier
    trial_ends_at: Optional[int]
    subscription_ends_at: Optional[int]
    subscription_expires_at: Optional[int]


def _hint(price_id: Optional[str]) -> str:
    return (price_id or "").lower()


def tier_for_price(price_id: Optional[str], price_amount_cents: Optional[int]) -> Tier:
    """Paid tier for an active subscription's price.

    The price ID wins when it names the tier; otherwise the unit amount
    decides. Anything below the Pro price falls back to free.
    """
    hint = _hint(price_id)
    if "premium" in hint:
        return Tier.PREMIUM
    if "pro" in hint:
        return Tier.PRO

    if price_amount_cents is not None:
        if price_amount_cents >= PREMIUM_MIN_AMOUNT_CENTS:
            return Tier.PREMIUM
        if price_amount_cents >= PRO_MIN_AMOUNT_CENTS:
            return Tier.PRO

    logger.warning(
        f"Active subscription with unrecognized price (price_id={price_id}, "
        f"amount={price_amount_cents}); falling back to free"
    )
    return Tier.FREE


def _resolve_tier_only(event: SubscriptionEvent, now: int) -> Tier:
    if event.status == SubscriptionStatus.TRIALING:
        return Tier.TRIAL

    if event.status == SubscriptionStatus.ACTIVE:
        return tier_for_price(event.price_id, event.price_amount_cents)

    if (
        event.status == SubscriptionStatus.CANCELED
        and event.current_period_end is not None
        and event.current_period_end > now
    ):
        # Grace period: keep paid access until the period they paid for ends
        return Tier.PREMIUM if "premium" in _hint(event.price_id) else Tier.PRO

    return Tier.FREE


def resolve_tier(event: SubscriptionEvent, now: int) -> TierResolution:
    """
    Derive the persisted subscription state for one event.

    Args:
        event: Normalized subscription event
        now: Current time as a Unix timestamp

    Returns:
        TierResolution
    """
    if event.cancel_at is not None:
        subscription_ends_at = event.cancel_at
    elif event.canceled_at is not None:
        subscription_ends_at = event.current_period_end
    else:
        subscription_ends_at = None

    tier = _resolve_tier_only(event, now)

    # Stripe keeps trial_end after the trial converts; only a trial tier carries it
    trial_ends_at = event.trial_end if tier == Tier.TRIAL else None

    return TierResolution(
        tier=tier,
        trial_ends_at=trial_ends_at,
        subscription_ends_at=subscription_ends_at,
        subscription_expires_at=event.current_period_end,
    )

"""
Profile store backed by the Supabase ``profiles`` table.

All billing state lives on the profile row keyed by ``id`` (the Supabase auth
user ID). Writes are a single ``UPDATE ... WHERE id = :user_id``; concurrent
writers resolve as last-write-wins.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError

from shared.constants import DEFAULT_PROFILES_TABLE
from shared.errors import NotFoundError, PersistenceError
from shared.logging_utils import external_call
from shared.subscription_events import SubscriptionEvent
from shared.tier_resolver import Tier, TierResolution
from shared.types import ProfileRecord

logger = logging.getLogger(__name__)


def to_iso(timestamp: Optional[int]) -> Optional[str]:
    """Unix seconds -> ISO-8601 UTC string (None passes through)."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class ProfileStore:
    """Reads and conditional updates on the profiles table."""

    def __init__(self, client, table: Optional[str] = None):
        self._client = client
        self._table = table or os.environ.get("PROFILES_TABLE") or DEFAULT_PROFILES_TABLE

    def get(self, user_id: str, columns: str = "*") -> Optional[ProfileRecord]:
        """Fetch one profile, or None when no row has this ID.

        Raises:
            PersistenceError: the query failed
        """
        try:
            with external_call(logger, "supabase", f"select {self._table}"):
                response = (
                    self._client.table(self._table)
                    .select(columns)
                    .eq("id", user_id)
                    .limit(1)
                    .execute()
                )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise PersistenceError(f"Failed to read profile {user_id}: {e}") from e

        rows = response.data or []
        return rows[0] if rows else None

    def update(self, user_id: str, fields: dict) -> ProfileRecord:
        """
        Apply ``fields`` to the profile with this ID.

        Returns:
            The updated row

        Raises:
            NotFoundError: no profile has this ID
            PersistenceError: the update failed
        """
        try:
            with external_call(logger, "supabase", f"update {self._table}"):
                response = (
                    self._client.table(self._table)
                    .update(fields)
                    .eq("id", user_id)
                    .execute()
                )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise PersistenceError(f"Failed to update profile {user_id}: {e}") from e

        rows = response.data or []
        if not rows:
            raise NotFoundError(f"No profile found for user {user_id}")

        logger.info(f"Updated profile {user_id}: {', '.join(sorted(fields))}")
        return rows[0]

    def set_customer_id(self, user_id: str, customer_id: str) -> ProfileRecord:
        """Link a Stripe customer to the profile."""
        return self.update(user_id, {"stripe_customer_id": customer_id})


def subscription_update_fields(event: SubscriptionEvent, resolution: TierResolution) -> dict:
    """Profile columns written for subscription created/updated and paid invoices.

    trial_ends_at and subscription_ends_at are always written so a stale value
    is cleared; subscription_expires_at is only written when known.
    """
    fields = {
        "stripe_subscription_id": event.subscription_id,
        "subscription_status": event.raw_status,
        "subscription_tier": resolution.tier.value,
        "trial_ends_at": to_iso(resolution.trial_ends_at),
        "subscription_ends_at": to_iso(resolution.subscription_ends_at),
    }
    if resolution.subscription_expires_at is not None:
        fields["subscription_expires_at"] = to_iso(resolution.subscription_expires_at)
    return fields


def subscription_deleted_fields(now: int) -> dict:
    """Fixed downgrade payload for a deleted subscription."""
    return {
        "subscription_tier": Tier.FREE.value,
        "subscription_status": "canceled",
        "stripe_subscription_id": None,
        "subscription_ends_at": to_iso(now),
    }


def payment_failed_fields() -> dict:
    """Failed renewal: mark past due, leave the tier to the subscription events."""
    return {"subscription_status": "past_due"}

"""
Billing event audit trail and ordering guard (DynamoDB).

Both are optional. The audit trail is best-effort: a failed write is logged
and never changes the webhook response.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import ClientError

from shared.clients import get_dynamodb
from shared.constants import BILLING_EVENT_TTL_DAYS

logger = logging.getLogger(__name__)

LATEST_EVENT_SK = "LATEST_EVENT"


class BillingEventLog:
    """Records processed webhook deliveries in the billing events table.

    Items:
        pk=<event id>, sk=<stripe event type>     one per delivery
        pk=user#<user id>, sk=LATEST_EVENT        newest applied event per user
    """

    def __init__(self, table):
        self._table = table

    def record(
        self,
        event_id: Optional[str],
        event_type: str,
        status: str,
        user_id: Optional[str] = None,
        event_created: Optional[int] = None,
        livemode: Optional[bool] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a delivery outcome ("success", "skipped" or "failed")."""
        if not event_id:
            return

        now = datetime.now(timezone.utc)
        try:
            self._table.put_item(
                Item={
                    "pk": event_id,
                    "sk": event_type,
                    "user_id": user_id or "unknown",
                    "processed_at": now.isoformat(),
                    "event_created_at": event_created,
                    "livemode": livemode,
                    "status": status,
                    "error": error,
                    "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
                }
            )
        except Exception as e:
            logger.error(f"Failed to record billing event {event_id}: {e}")

    def is_stale(self, user_id: str, event_created: Optional[int]) -> bool:
        """True if a newer event than event_created was already applied for this user.

        Events with no ``created`` timestamp cannot be ordered and are never stale.
        """
        if event_created is None:
            return False

        response = self._table.get_item(
            Key={"pk": f"user#{user_id}", "sk": LATEST_EVENT_SK},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return item is not None and item["last_event_created"] > event_created

    def claim_sequence(self, user_id: str, event_id: Optional[str], event_created: Optional[int]) -> bool:
        """Atomically advance the user's newest-applied event timestamp.

        Call only after the event's profile write succeeded, so a failed write
        never hides older events.

        Returns:
            True if the marker now points at this event
            False if a newer event was applied concurrently

        Events with no ``created`` timestamp cannot be ordered and are applied.
        Equal timestamps are accepted so redeliveries stay idempotent.
        """
        if event_created is None:
            return True

        try:
            self._table.put_item(
                Item={
                    "pk": f"user#{user_id}",
                    "sk": LATEST_EVENT_SK,
                    "last_event_created": event_created,
                    "last_event_id": event_id or "unknown",
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                ConditionExpression="attribute_not_exists(pk) OR last_event_created <= :created",
                ExpressionAttributeValues={":created": event_created},
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise


def get_billing_event_log() -> Optional[BillingEventLog]:
    """Event log for BILLING_EVENTS_TABLE, or None when not configured."""
    table_name = os.environ.get("BILLING_EVENTS_TABLE")
    if not table_name:
        return None
    return BillingEventLog(get_dynamodb().Table(table_name))

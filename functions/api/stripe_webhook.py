"""
Stripe Webhook Endpoint - POST /stripe/webhook

Handles Stripe webhook events for subscription management.
Uses Stripe signature verification instead of user auth.

Flow per delivery: verify signature -> normalize -> resolve tier -> update
profile. Deliveries share no state. Persistence failures are logged and
acknowledged with 200 by default so Stripe does not retry-storm us; set
PERSISTENCE_FAILURE_POLICY=retry to answer 500 and let Stripe redeliver.
"""

import base64
import json
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

import stripe
from botocore.exceptions import ClientError

from shared.billing_events import BillingEventLog, get_billing_event_log
from shared.billing_utils import get_stripe_secrets
from shared.clients import get_stripe_client, get_supabase_admin
from shared.constants import PERSISTENCE_POLICY_ACKNOWLEDGE, PERSISTENCE_POLICY_RETRY
from shared.errors import (
    MalformedEventError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    SignatureError,
)
from shared.logging_utils import (
    configure_structured_logging,
    external_call,
    log_api_request,
    set_request_id,
)
from shared.profiles import (
    ProfileStore,
    payment_failed_fields,
    subscription_deleted_fields,
    subscription_update_fields,
)
from shared.response_utils import api_error_response, error_response, success_response
from shared.subscription_events import EventType, SubscriptionEvent, normalize_event
from shared.tier_resolver import resolve_tier
from shared.types import APIGatewayEvent, LambdaResponse

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Stripe's default replay window for signed payloads
SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class BranchOutcome:
    """Result of one event branch: "success", "skipped", "ignored" or "failed"."""

    status: str
    user_id: Optional[str] = None
    error: Optional[str] = None


def persistence_failure_policy() -> str:
    policy = (os.environ.get("PERSISTENCE_FAILURE_POLICY") or PERSISTENCE_POLICY_ACKNOWLEDGE).lower()
    if policy not in (PERSISTENCE_POLICY_ACKNOWLEDGE, PERSISTENCE_POLICY_RETRY):
        logger.warning(f"Unknown PERSISTENCE_FAILURE_POLICY={policy!r}, using {PERSISTENCE_POLICY_ACKNOWLEDGE}")
        return PERSISTENCE_POLICY_ACKNOWLEDGE
    return policy


def reject_stale_events() -> bool:
    return os.environ.get("REJECT_STALE_EVENTS", "").lower() == "true"


# ===========================================
# Verification
# ===========================================


def _raw_body(event: APIGatewayEvent) -> str:
    """Request body as text, undoing API Gateway's base64 encoding.

    Raises:
        SignatureError(undecodable_body): the body cannot be recovered, so its
            signature cannot be checked
    """
    body = event.get("body") or ""
    if not event.get("isBase64Encoded"):
        return body
    try:
        return base64.b64decode(body, validate=True).decode("utf-8")
    except ValueError as e:  # binascii.Error and UnicodeDecodeError
        raise SignatureError("Request body could not be decoded", code="undecodable_body") from e


def verify_event(payload: str, sig_header: Optional[str], webhook_secret: str) -> dict:
    """Check the Stripe-Signature header and decode the payload.

    Raises:
        SignatureError: header missing or signature mismatch / expired
        MalformedEventError: signature is valid but the body is not JSON
    """
    if not sig_header:
        raise SignatureError("Missing Stripe signature", code="missing_signature")

    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, webhook_secret, SIGNATURE_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as e:
        raise SignatureError() from e

    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedEventError("Event payload is not valid JSON") from e


def _as_mapping(obj) -> Mapping:
    if isinstance(obj, Mapping):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise MalformedEventError("Subscription response is not an object")


def subscription_fetcher(stripe_client):
    """Build the normalizer's subscription lookup on top of a StripeClient."""

    def fetch(subscription_id: str) -> Mapping:
        try:
            with external_call(logger, "stripe", "subscriptions.retrieve"):
                subscription = stripe_client.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise ProviderError(f"Failed to retrieve subscription {subscription_id}") from e
        return _as_mapping(subscription)

    return fetch


# ===========================================
# Branches
# ===========================================


def _apply(
    profiles: ProfileStore,
    event: SubscriptionEvent,
    fields: dict,
    event_log: Optional[BillingEventLog],
    guard_ordering: bool,
) -> BranchOutcome:
    """Write fields to the event's profile, absorbing persistence errors.

    With the ordering guard on, the per-user marker only advances after the
    profile write succeeds. Two deliveries racing between the stale check and
    the write can still both land; last write wins.
    """
    user_id = event.user_id
    guarded = guard_ordering and event_log is not None
    try:
        if guarded:
            try:
                stale = event_log.is_stale(user_id, event.created)
            except ClientError as e:
                raise PersistenceError(f"Failed to check event order for {user_id}: {e}") from e
            if stale:
                logger.warning(
                    f"Skipping stale {event.stripe_type} for user {user_id} "
                    f"(created={event.created}); a newer event was already applied"
                )
                return BranchOutcome("skipped", user_id=user_id)

        profiles.update(user_id, fields)

    except (PersistenceError, NotFoundError) as e:
        logger.error(f"Error updating profile for {event.stripe_type}: {e.message}")
        return BranchOutcome("failed", user_id=user_id, error=e.message)

    if guarded:
        try:
            if not event_log.claim_sequence(user_id, event.event_id, event.created):
                logger.warning(f"Newer event for user {user_id} landed while applying {event.event_id}")
        except ClientError as e:
            logger.error(f"Failed to advance event order for {user_id}: {e}")

    return BranchOutcome("success", user_id=user_id)


def _missing_user(event: SubscriptionEvent) -> BranchOutcome:
    logger.error(f"No user ID in subscription metadata for {event.stripe_type} (id={event.event_id})")
    return BranchOutcome("skipped")


def _handle_subscription_changed(event, now, profiles, event_log, guard_ordering) -> BranchOutcome:
    """Subscription created/updated: recompute tier and dates from scratch."""
    if not event.user_id:
        return _missing_user(event)

    resolution = resolve_tier(event, now)
    logger.info(
        f"Subscription {event.subscription_id} for user {event.user_id}: "
        f"status={event.raw_status}, price={event.price_id}, tier={resolution.tier.value}"
    )
    fields = subscription_update_fields(event, resolution)
    return _apply(profiles, event, fields, event_log, guard_ordering)


def _handle_subscription_deleted(event, now, profiles, event_log, guard_ordering) -> BranchOutcome:
    """Subscription deleted: downgrade to free regardless of prior state."""
    if not event.user_id:
        return _missing_user(event)

    logger.info(f"Subscription {event.subscription_id} deleted for user {event.user_id}, downgrading to free")
    return _apply(profiles, event, subscription_deleted_fields(now), event_log, guard_ordering)


def _handle_invoice_payment_succeeded(event, now, profiles, event_log, guard_ordering) -> BranchOutcome:
    """Invoice paid: re-derive state from the invoice's subscription."""
    if not event.subscription_id:
        logger.info("Invoice has no subscription, skipping")
        return BranchOutcome("skipped")
    if not event.user_id:
        return _missing_user(event)

    resolution = resolve_tier(event, now)
    logger.info(
        f"Payment succeeded for user {event.user_id}: "
        f"status={event.raw_status}, tier={resolution.tier.value}"
    )
    fields = subscription_update_fields(event, resolution)
    return _apply(profiles, event, fields, event_log, guard_ordering)


def _handle_invoice_payment_failed(event, now, profiles, event_log, guard_ordering) -> BranchOutcome:
    """Invoice failed: mark past due; the tier follows later subscription events."""
    if not event.subscription_id:
        logger.info("Invoice has no subscription, skipping")
        return BranchOutcome("skipped")
    if not event.user_id:
        return _missing_user(event)

    logger.warning(f"Payment failed for user {event.user_id}")
    return _apply(profiles, event, payment_failed_fields(), event_log, guard_ordering)


_BRANCHES = {
    EventType.SUBSCRIPTION_CREATED: _handle_subscription_changed,
    EventType.SUBSCRIPTION_UPDATED: _handle_subscription_changed,
    EventType.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    EventType.INVOICE_PAYMENT_SUCCEEDED: _handle_invoice_payment_succeeded,
    EventType.INVOICE_PAYMENT_FAILED: _handle_invoice_payment_failed,
}


def dispatch_event(
    event: SubscriptionEvent,
    now: int,
    profiles: ProfileStore,
    event_log: Optional[BillingEventLog] = None,
    guard_ordering: bool = False,
) -> BranchOutcome:
    """Route a normalized event to its branch. Unknown types are ignored."""
    branch = _BRANCHES.get(event.event_type)
    if branch is None:
        logger.info(f"Unhandled event type: {event.stripe_type}")
        return BranchOutcome("ignored")
    return branch(event, now, profiles, event_log, guard_ordering)


# ===========================================
# Entry points
# ===========================================


def _received(extra: Optional[dict] = None) -> dict:
    body = {"received": True}
    if extra:
        body.update(extra)
    return success_response(body)


def _record(event_log, raw_event, status, user_id=None, error=None):
    if event_log is None or not isinstance(raw_event, Mapping):
        return
    event_log.record(
        event_id=raw_event.get("id"),
        event_type=str(raw_event.get("type") or "unknown"),
        status=status,
        user_id=user_id,
        event_created=raw_event.get("created") if isinstance(raw_event.get("created"), int) else None,
        livemode=raw_event.get("livemode") if isinstance(raw_event.get("livemode"), bool) else None,
        error=error,
    )


def process_webhook(
    event: APIGatewayEvent,
    *,
    webhook_secret: str,
    stripe_client,
    profiles: ProfileStore,
    event_log: Optional[BillingEventLog] = None,
    now: Optional[int] = None,
    policy: Optional[str] = None,
    guard_ordering: Optional[bool] = None,
) -> LambdaResponse:
    """
    Verify and apply one webhook delivery.

    Args:
        event: API Gateway proxy event
        webhook_secret: Stripe endpoint signing secret
        stripe_client: StripeClient used for invoice -> subscription lookups
        profiles: Profile store to update
        event_log: Optional audit trail / ordering guard
        now: Current Unix time (defaults to the wall clock)
        policy: Persistence failure policy (defaults to the environment)
        guard_ordering: Skip events older than the last applied one
            (defaults to REJECT_STALE_EVENTS)

    Returns:
        Lambda response dict
    """
    headers = event.get("headers") or {}
    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")

    try:
        raw_event = verify_event(_raw_body(event), sig_header, webhook_secret)
    except SignatureError as e:
        logger.warning(f"Webhook signature verification failed: {e.message}")
        return api_error_response(e)
    except MalformedEventError as e:
        logger.error(f"Signed webhook payload could not be decoded: {e.message}")
        return _received({"processed": False, "error": {"code": e.code, "message": e.message}})

    if now is None:
        now = int(time.time())
    if policy is None:
        policy = persistence_failure_policy()
    if guard_ordering is None:
        guard_ordering = reject_stale_events()

    event_id = raw_event.get("id") if isinstance(raw_event, Mapping) else None
    logger.info(f"Received webhook event {event_id}")

    try:
        normalized = normalize_event(raw_event, fetch_subscription=subscription_fetcher(stripe_client))
        logger.info(f"Processing Stripe event: {normalized.stripe_type} (id={normalized.event_id})")
        outcome = dispatch_event(normalized, now, profiles, event_log, guard_ordering)

    except MalformedEventError as e:
        # Redelivery cannot fix the payload - acknowledge so Stripe stops retrying
        _record(event_log, raw_event, "failed", error=e.message)
        logger.error(f"Invalid event data in {event_id}: {e.message}")
        return _received({"processed": False, "error": {"code": e.code, "message": e.message}})
    except ProviderError as e:
        _record(event_log, raw_event, "failed", error=e.message)
        logger.error(f"Stripe error handling {event_id}: {e.message}")
        return api_error_response(e)
    except Exception as e:
        _record(event_log, raw_event, "failed", error=str(e))
        logger.error(f"Webhook handler error for {event_id}: {e}", exc_info=True)
        return error_response(500, "webhook_handler_failed", "Webhook handler failed")

    _record(event_log, raw_event, outcome.status, user_id=outcome.user_id, error=outcome.error)

    if outcome.status == "failed" and policy == PERSISTENCE_POLICY_RETRY:
        return error_response(500, "persistence_failed", "Profile update failed, please retry")

    return _received()


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - customer.subscription.created / updated: recompute tier
    - customer.subscription.deleted: downgrade to free
    - invoice.payment_succeeded: recompute tier from the invoice's subscription
    - invoice.payment_failed: mark past due
    """
    start_time = time.time()
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = get_stripe_secrets()
    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    try:
        profiles = ProfileStore(get_supabase_admin())
    except RuntimeError as e:
        logger.error(f"Database not configured: {e}")
        return error_response(500, "database_not_configured", "Database not configured")

    response = process_webhook(
        event,
        webhook_secret=webhook_secret,
        stripe_client=get_stripe_client(stripe_api_key),
        profiles=profiles,
        event_log=get_billing_event_log(),
    )

    latency_ms = (time.time() - start_time) * 1000
    log_api_request(logger, "POST", "/stripe/webhook", response["statusCode"], latency_ms)
    return response

"""
Create Billing Portal Session Endpoint - POST /stripe/create-portal

Creates a Stripe Billing Portal session so a subscriber can manage their plan.
Only users that went through checkout have a Stripe customer.
"""

import logging
import time
from typing import Optional

import stripe

from shared.billing_utils import get_stripe_api_key, site_url
from shared.clients import get_stripe_client, get_supabase_anon
from shared.errors import APIError, NotFoundError, ProviderError
from shared.logging_utils import (
    configure_structured_logging,
    external_call,
    log_api_request,
    set_request_id,
)
from shared.profiles import ProfileStore
from shared.request_utils import parse_json_body, require_fields
from shared.response_utils import api_error_response, error_response, get_origin, success_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def create_portal_session(
    stripe_client,
    profiles: ProfileStore,
    user_id: str,
    base_url: Optional[str] = None,
) -> dict:
    """
    Create a billing portal session for a user.

    Returns:
        {"url": ...}

    Raises:
        NotFoundError(no_customer): unknown user or no Stripe customer yet
        PersistenceError: profile lookup failed
        ProviderError: Stripe rejected the request
    """
    base_url = base_url or site_url()

    profile = profiles.get(user_id, columns="stripe_customer_id")
    customer_id = (profile or {}).get("stripe_customer_id")
    if not customer_id:
        raise NotFoundError("No Stripe customer found for this user", code="no_customer")

    try:
        with external_call(logger, "stripe", "billing_portal.sessions.create"):
            portal_session = stripe_client.billing_portal.sessions.create(
                params={
                    "customer": customer_id,
                    "return_url": f"{base_url}/dashboard",
                }
            )
    except stripe.StripeError as e:
        raise ProviderError(f"Failed to create billing portal session: {e.user_message or e}") from e

    logger.info(f"Created billing portal session for user {user_id}")
    return {"url": portal_session.url}


def handler(event, context):
    """
    Lambda handler for POST /stripe/create-portal.

    Request body:
    {
        "userId": "<supabase user id>"
    }

    Returns:
    {
        "url": "https://billing.stripe.com/..."
    }
    """
    start_time = time.time()
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    stripe_api_key = get_stripe_api_key()
    if not stripe_api_key:
        logger.error("Stripe API key not configured")
        return error_response(
            500, "stripe_not_configured", "Payment system not configured", origin=origin
        )

    user_id = None
    try:
        (user_id,) = require_fields(parse_json_body(event), "userId")
        result = create_portal_session(
            get_stripe_client(stripe_api_key),
            ProfileStore(get_supabase_anon()),
            user_id,
        )
        response = success_response(result, origin=origin)
    except APIError as e:
        logger.warning(f"Billing portal failed for user {user_id}: {e.code} {e.message}")
        response = api_error_response(e, origin=origin)
    except Exception as e:
        logger.error(f"Error creating billing portal session: {e}", exc_info=True)
        response = error_response(
            500, "internal_error", "Failed to create billing portal session", origin=origin
        )

    latency_ms = (time.time() - start_time) * 1000
    log_api_request(logger, "POST", "/stripe/create-portal", response["statusCode"], latency_ms, user_id)
    return response

"""
Create Checkout Session Endpoint - POST /stripe/create-checkout

Creates a Stripe Checkout session for a subscription with a free trial.
The Stripe customer is created on first checkout and linked to the profile.
"""

import logging
import time
from typing import Optional

import stripe

from shared.billing_utils import get_stripe_api_key, site_url, trial_period_days
from shared.clients import get_stripe_client, get_supabase_admin
from shared.constants import USER_ID_METADATA_KEY
from shared.errors import APIError, NotFoundError, PersistenceError, ProviderError
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


def _ensure_customer(stripe_client, profiles: ProfileStore, user_id: str, profile: dict) -> str:
    """Return the profile's Stripe customer, creating and linking one if needed."""
    customer_id = profile.get("stripe_customer_id")
    if customer_id:
        logger.info(f"Using existing Stripe customer {customer_id} for user {user_id}")
        return customer_id

    params = {"metadata": {USER_ID_METADATA_KEY: user_id}}
    if profile.get("email"):
        params["email"] = profile["email"]

    with external_call(logger, "stripe", "customers.create"):
        customer = stripe_client.customers.create(params=params)
    customer_id = customer.id
    logger.info(f"Created Stripe customer {customer_id} for user {user_id}")

    # Losing the link only costs a duplicate customer on the next checkout
    try:
        profiles.set_customer_id(user_id, customer_id)
    except (PersistenceError, NotFoundError) as e:
        logger.error(f"Failed to save Stripe customer {customer_id} for user {user_id}: {e.message}")

    return customer_id


def create_checkout_session(
    stripe_client,
    profiles: ProfileStore,
    user_id: str,
    price_id: str,
    trial_days: Optional[int] = None,
    base_url: Optional[str] = None,
) -> dict:
    """
    Create a subscription checkout session for a user.

    Returns:
        {"sessionId": ..., "url": ...}

    Raises:
        NotFoundError: no profile for user_id
        PersistenceError: profile lookup failed
        ProviderError: Stripe rejected a request
    """
    base_url = base_url or site_url()
    trial_days = trial_period_days() if trial_days is None else trial_days

    profile = profiles.get(user_id, columns="email, stripe_customer_id")
    if profile is None:
        raise NotFoundError()

    try:
        customer_id = _ensure_customer(stripe_client, profiles, user_id, profile)

        subscription_data = {"metadata": {USER_ID_METADATA_KEY: user_id}}
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        with external_call(logger, "stripe", "checkout.sessions.create"):
            session = stripe_client.checkout.sessions.create(
                params={
                    "customer": customer_id,
                    "mode": "subscription",
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": f"{base_url}/dashboard?payment=success",
                    "cancel_url": f"{base_url}/pricing?payment=canceled",
                    "subscription_data": subscription_data,
                    "metadata": {USER_ID_METADATA_KEY: user_id},
                }
            )
    except stripe.StripeError as e:
        raise ProviderError(f"Failed to create checkout session: {e.user_message or e}") from e

    logger.info(f"Created checkout session {session.id} for user {user_id}, price {price_id}")
    return {"sessionId": session.id, "url": session.url}


def handler(event, context):
    """
    Lambda handler for POST /stripe/create-checkout.

    Request body:
    {
        "userId": "<supabase user id>",
        "priceId": "price_..."
    }

    Returns:
    {
        "sessionId": "cs_...",
        "url": "https://checkout.stripe.com/..."
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
        user_id, price_id = require_fields(parse_json_body(event), "userId", "priceId")
        result = create_checkout_session(
            get_stripe_client(stripe_api_key),
            ProfileStore(get_supabase_admin()),
            user_id,
            price_id,
        )
        response = success_response(result, origin=origin)
    except APIError as e:
        logger.warning(f"Checkout failed for user {user_id}: {e.code} {e.message}")
        response = api_error_response(e, origin=origin)
    except Exception as e:
        logger.error(f"Error creating checkout session: {e}", exc_info=True)
        response = error_response(500, "internal_error", "Failed to create checkout session", origin=origin)

    latency_ms = (time.time() - start_time) * 1000
    log_api_request(logger, "POST", "/stripe/create-checkout", response["statusCode"], latency_ms, user_id)
    return response

"""Shared billing utilities for Stripe-related configuration."""

import json
import logging
import os
import time

from botocore.exceptions import ClientError

from shared.clients import get_secretsmanager
from shared.constants import DEFAULT_TRIAL_PERIOD_DAYS, STRIPE_CACHE_TTL

logger = logging.getLogger(__name__)

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0


def _read_secret(secret_arn: str, json_field: str) -> str | None:
    """Read a secret string, unwrapping {"<json_field>": ...} JSON if present."""
    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {secret_arn}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or secret_value
    return secret_value or None


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Return (api_key, webhook_secret).

    Plain environment variables win. Otherwise the values are read from
    Secrets Manager via STRIPE_SECRET_ARN / STRIPE_WEBHOOK_SECRET_ARN and
    cached for STRIPE_CACHE_TTL seconds.
    """
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    env_key = os.environ.get("STRIPE_SECRET_KEY") or None
    env_webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET") or None
    if env_key and env_webhook_secret:
        return env_key, env_webhook_secret

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_CACHE_TTL:
        cached_key, cached_webhook_secret = _stripe_secrets_cache
        return env_key or cached_key, env_webhook_secret or cached_webhook_secret

    api_key = env_key
    webhook_secret = env_webhook_secret

    secret_arn = os.environ.get("STRIPE_SECRET_ARN")
    if not api_key and secret_arn:
        api_key = _read_secret(secret_arn, "key")

    webhook_secret_arn = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")
    if not webhook_secret and webhook_secret_arn:
        webhook_secret = _read_secret(webhook_secret_arn, "secret")

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def get_stripe_api_key() -> str | None:
    """Retrieve the Stripe secret key (env var or Secrets Manager)."""
    api_key, _ = get_stripe_secrets()
    return api_key


def reset_stripe_secrets_cache():
    """Clear cached secrets. Used in tests for clean state."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0


def site_url() -> str:
    """Public site URL used for checkout and portal redirects."""
    return (os.environ.get("SITE_URL") or "http://localhost:3000").rstrip("/")


def trial_period_days() -> int:
    """Trial length applied to new checkout subscriptions."""
    raw = os.environ.get("TRIAL_PERIOD_DAYS")
    if not raw:
        return DEFAULT_TRIAL_PERIOD_DAYS
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid TRIAL_PERIOD_DAYS={raw!r}")
        return DEFAULT_TRIAL_PERIOD_DAYS

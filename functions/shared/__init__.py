# Shared utilities package
from .errors import APIError
from .response_utils import error_response, success_response
from .subscription_events import EventType, SubscriptionEvent, normalize_event
from .tier_resolver import Tier, TierResolution, resolve_tier

__all__ = [
    "normalize_event",
    "resolve_tier",
    "EventType",
    "SubscriptionEvent",
    "Tier",
    "TierResolution",
    "error_response",
    "success_response",
    "APIError",
]

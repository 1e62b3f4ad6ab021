"""
Shared constants for Scout billing.
"""

# Price amount fallback when the price ID carries no tier hint (cents).
# Pro: $29/mo, Premium: $79/mo. Annual prices are larger and land on the same side.
PRO_MIN_AMOUNT_CENTS = 2900
PREMIUM_MIN_AMOUNT_CENTS = 7900

# Checkout
DEFAULT_TRIAL_PERIOD_DAYS = 14

# Stripe metadata key linking Stripe objects back to profiles.id
USER_ID_METADATA_KEY = "supabase_user_id"

# Supabase
DEFAULT_PROFILES_TABLE = "profiles"

# Webhook persistence failure policies
PERSISTENCE_POLICY_ACKNOWLEDGE = "acknowledge"
PERSISTENCE_POLICY_RETRY = "retry"

# Billing events audit trail retention
BILLING_EVENT_TTL_DAYS = 90

# Stripe secrets cache
STRIPE_CACHE_TTL = 300  # 5 minutes

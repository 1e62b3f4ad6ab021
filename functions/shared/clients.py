"""
Centralized client factory with lazy initialization.

Defers boto3, Stripe and Supabase client creation until first use so cold
starts stay cheap. Handlers resolve their defaults here and pass the clients
into the processing functions, which keeps those functions testable with
plain fakes.
"""

import os

_dynamodb = None
_secretsmanager = None
_stripe_clients = {}
_supabase_admin = None
_supabase_anon = None


def get_dynamodb():
    """Get DynamoDB resource, creating it lazily on first use."""
    global _dynamodb
    if _dynamodb is None:
        import boto3
        _dynamodb = boto3.resource("dynamodb")
    return _dynamodb


def get_secretsmanager():
    """Get Secrets Manager client, creating it lazily on first use."""
    global _secretsmanager
    if _secretsmanager is None:
        import boto3
        _secretsmanager = boto3.client("secretsmanager")
    return _secretsmanager


def get_stripe_client(api_key: str):
    """Get a StripeClient for the given secret key (one per key per process)."""
    client = _stripe_clients.get(api_key)
    if client is None:
        import stripe
        client = stripe.StripeClient(api_key)
        _stripe_clients[api_key] = client
    return client


def get_supabase_admin():
    """Get the service-role Supabase client (bypasses row level security)."""
    global _supabase_admin
    if _supabase_admin is None:
        from supabase import ClientOptions, create_client

        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_admin = create_client(
            url,
            key,
            options=ClientOptions(auto_refresh_token=False, persist_session=False),
        )
    return _supabase_admin


def get_supabase_anon():
    """Get the anon-key Supabase client (subject to row level security)."""
    global _supabase_anon
    if _supabase_anon is None:
        from supabase import create_client

        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_ANON_KEY")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
        _supabase_anon = create_client(url, key)
    return _supabase_anon


def reset_clients():
    """Reset all cached clients. Used in tests for clean state."""
    global _dynamodb, _secretsmanager, _supabase_admin, _supabase_anon
    _dynamodb = None
    _secretsmanager = None
    _supabase_admin = None
    _supabase_anon = None
    _stripe_clients.clear()

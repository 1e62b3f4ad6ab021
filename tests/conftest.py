"""
Shared pytest fixtures for billing tests.
"""

import copy
import hashlib
import hmac
import json
import os
import sys
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
BILLING_EVENTS_TABLE = "scout-billing-events"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def billing_env(monkeypatch):
    """Baseline billing configuration; individual tests override as needed."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("SITE_URL", "https://scout.example.com")
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    for name in (
        "STRIPE_SECRET_ARN",
        "STRIPE_WEBHOOK_SECRET_ARN",
        "BILLING_EVENTS_TABLE",
        "PERSISTENCE_FAILURE_POLICY",
        "REJECT_STALE_EVENTS",
        "TRIAL_PERIOD_DAYS",
        "PROFILES_TABLE",
        "ALLOW_DEV_CORS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_shared_clients():
    """Reset shared client singletons and secret caches between tests."""
    yield
    from shared.billing_utils import reset_stripe_secrets_cache
    from shared.clients import reset_clients

    reset_clients()
    reset_stripe_secrets_cache()


def create_dynamodb_tables(dynamodb):
    """Create the billing events table (audit trail + ordering guard)."""
    dynamodb.create_table(
        TableName=BILLING_EVENTS_TABLE,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id or user#<id>
            {"AttributeName": "sk", "KeyType": "RANGE"},  # event_type or LATEST_EVENT
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def billing_events_table(mock_dynamodb, monkeypatch):
    """Billing events table wired through BILLING_EVENTS_TABLE."""
    monkeypatch.setenv("BILLING_EVENTS_TABLE", BILLING_EVENTS_TABLE)
    return mock_dynamodb.Table(BILLING_EVENTS_TABLE)


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


# ===========================================
# Supabase fake
# ===========================================


class FakeQuery:
    """Chainable stand-in for a postgrest request builder."""

    def __init__(self, db, table):
        self._db = db
        self._table = table
        self._action = "select"
        self._columns = "*"
        self._fields = None
        self._filters = []
        self._limit = None

    def select(self, columns="*"):
        self._action = "select"
        self._columns = columns
        return self

    def update(self, fields):
        self._action = "update"
        self._fields = dict(fields)
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self._filters)

    def execute(self):
        self._db.calls.append(
            {
                "table": self._table,
                "action": self._action,
                "columns": self._columns,
                "fields": self._fields,
                "filters": list(self._filters),
            }
        )
        if self._db.error is not None:
            raise self._db.error

        rows = [row for row in self._db.tables.setdefault(self._table, []) if self._matches(row)]
        if self._action == "update":
            for row in rows:
                row.update(self._fields)
        if self._limit is not None:
            rows = rows[: self._limit]
        return SimpleNamespace(data=[copy.deepcopy(row) for row in rows], count=None)


class FakeSupabase:
    """In-memory Supabase client exposing ``table(name)`` queries.

    Set ``error`` to make every query raise it.
    """

    def __init__(self, profiles=None):
        self.tables = {"profiles": [dict(row) for row in (profiles or [])]}
        self.calls = []
        self.error = None

    def table(self, name):
        return FakeQuery(self, name)

    def profile(self, user_id):
        for row in self.tables["profiles"]:
            if row.get("id") == user_id:
                return row
        return None

    @property
    def updates(self):
        return [call for call in self.calls if call["action"] == "update"]


@pytest.fixture
def supabase():
    """Fake Supabase seeded with one free-tier profile."""
    return FakeSupabase(
        profiles=[
            {
                "id": "user_123",
                "email": "creator@example.com",
                "stripe_customer_id": None,
                "stripe_subscription_id": None,
                "subscription_tier": "free",
                "subscription_status": None,
                "trial_ends_at": None,
                "subscription_ends_at": None,
                "subscription_expires_at": None,
            }
        ]
    )


@pytest.fixture
def stripe_client():
    """MagicMock StripeClient; tests set return values per service call."""
    return MagicMock(name="StripeClient")


# ===========================================
# Stripe payload helpers
# ===========================================


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_subscription(
    status="active",
    price_id="price_pro_monthly",
    unit_amount=2900,
    user_id="user_123",
    subscription_id="sub_123",
    current_period_end=None,
    trial_end=None,
    cancel_at=None,
    canceled_at=None,
):
    """Subscription object shaped like Stripe's API response."""
    metadata = {"supabase_user_id": user_id} if user_id else {}
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "metadata": metadata,
        "current_period_end": current_period_end,
        "trial_end": trial_end,
        "cancel_at": cancel_at,
        "canceled_at": canceled_at,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": "si_123",
                    "price": {"id": price_id, "unit_amount": unit_amount},
                }
            ],
        },
    }


def make_event(event_type, data_object, event_id="evt_123", created=1_700_000_000):
    """Stripe event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": data_object},
    }


def webhook_request(api_gateway_event, stripe_event, secret=WEBHOOK_SECRET, signature=None):
    """API Gateway event carrying a signed Stripe delivery."""
    payload = stripe_event if isinstance(stripe_event, str) else json.dumps(stripe_event)
    api_gateway_event["httpMethod"] = "POST"
    api_gateway_event["body"] = payload
    api_gateway_event["headers"] = {
        "Content-Type": "application/json",
        "Stripe-Signature": signature if signature is not None else sign_payload(payload, secret),
    }
    return api_gateway_event

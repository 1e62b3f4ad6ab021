"""
Shared Type Definitions for Lambda Handlers.

Provides TypedDict definitions for API Gateway events, responses and the
profile rows read from Supabase.
"""

from typing import Any, Optional, TypedDict


class APIGatewayEvent(TypedDict, total=False):
    """API Gateway proxy event structure."""

    httpMethod: str
    headers: dict[str, str]
    pathParameters: Optional[dict[str, str]]
    queryStringParameters: Optional[dict[str, str]]
    body: Optional[str]
    requestContext: dict[str, Any]
    resource: str
    path: str
    isBase64Encoded: bool


class LambdaResponse(TypedDict):
    """Standard Lambda response structure."""

    statusCode: int
    headers: dict[str, str]
    body: str


class ProfileRecord(TypedDict, total=False):
    """Row of the Supabase profiles table (billing columns only)."""

    id: str
    email: str
    stripe_customer_id: Optional[str]
    stripe_subscription_id: Optional[str]
    subscription_tier: str
    subscription_status: Optional[str]
    trial_ends_at: Optional[str]
    subscription_ends_at: Optional[str]
    subscription_expires_at: Optional[str]



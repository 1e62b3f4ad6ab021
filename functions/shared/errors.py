"""
Standardized errors for the billing API.
"""

import json
from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class ValidationError(APIError):
    """Raised when required request fields are missing or malformed."""

    def __init__(self, message: str, code: str = "missing_fields", details: Optional[dict] = None):
        super().__init__(
            code=code,
            message=message,
            status_code=400,
            details=details,
        )


class NotFoundError(APIError):
    """Raised when a user or billing customer does not exist."""

    def __init__(self, message: str = "User not found", code: str = "user_not_found"):
        super().__init__(
            code=code,
            message=message,
            status_code=404,
        )


class SignatureError(APIError):
    """Raised when a webhook signature is missing or does not verify."""

    def __init__(self, message: str = "Invalid signature", code: str = "invalid_signature"):
        super().__init__(
            code=code,
            message=message,
            status_code=400,
        )


class MalformedEventError(APIError):
    """Raised when a billing event cannot be parsed as a known shape."""

    def __init__(self, message: str = "Invalid event data"):
        super().__init__(
            code="invalid_event_data",
            message=message,
            status_code=400,
        )


class PersistenceError(APIError):
    """Raised when a profile read or write fails at the database."""

    def __init__(self, message: str = "Database operation failed", details: Optional[dict] = None):
        super().__init__(
            code="database_error",
            message=message,
            status_code=500,
            details=details,
        )


class ProviderError(APIError):
    """Raised when a call to the billing provider fails."""

    def __init__(self, message: str = "Billing provider request failed"):
        super().__init__(
            code="stripe_error",
            message=message,
            status_code=500,
        )

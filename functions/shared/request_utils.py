"""Shared request utilities for API handlers."""

import base64
import json
import logging

from shared.errors import ValidationError

logger = logging.getLogger(__name__)


def parse_json_body(event: dict) -> dict:
    """Decode the request body as a JSON object.

    Raises:
        ValidationError(invalid_json): body is not a JSON object
    """
    body = event.get("body") or "{}"
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        raise ValidationError("Request body must be valid JSON", code="invalid_json")

    if not isinstance(parsed, dict):
        raise ValidationError("Request body must be a JSON object", code="invalid_json")
    return parsed


def require_fields(body: dict, *names: str) -> tuple:
    """Return the named string fields, raising if any is missing or empty.

    Raises:
        ValidationError(missing_fields)
    """
    missing = [name for name in names if not isinstance(body.get(name), str) or not body.get(name)]
    if missing:
        logger.warning(f"Request missing required fields: {missing}")
        raise ValidationError(
            f"Missing {' or '.join(missing)}",
            details={"missing": missing},
        )
    return tuple(body[name] for name in names)

"""
Billing Routes Liveness Endpoint - GET|POST /stripe/test

Confirms the billing routes are deployed and reachable.
No authentication required and no Stripe or database calls.
"""

import json
import time
from datetime import datetime, timezone

from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id

# Configure structured logging
logger = configure_structured_logging()

MESSAGES = {
    "GET": "Stripe API routes are working!",
    "POST": "POST is working too!",
}


def handler(event, context):
    """
    Lambda handler for the billing liveness check.

    Returns:
        200 with status information, 405 for other methods
    """
    start_time = time.time()

    # Set request ID for logging correlation
    set_request_id(event)

    method = (event.get("httpMethod") or "GET").upper()
    message = MESSAGES.get(method)

    if message is None:
        status_code = 405
        body = {"error": {"code": "method_not_allowed", "message": f"Method {method} not allowed"}}
        headers = {"Allow": "GET, POST"}
    else:
        status_code = 200
        body = {
            "status": "ok",
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        headers = {}

    response = {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Cache-Control": "no-cache",
            **headers,
        },
        "body": json.dumps(body),
    }

    # Log the request
    latency_ms = (time.time() - start_time) * 1000
    log_api_request(logger, method, "/stripe/test", status_code, latency_ms)

    return response

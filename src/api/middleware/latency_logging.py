"""Request latency logging middleware."""

import logging
import time
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
VERY_SLOW_REQUEST_THRESHOLD_MS = 3000

QUIET_PATHS = ("/health", "/health/ready")
WEBHOOK_PATH_PREFIX = "/api/v1/webhooks/"

# Headers identifying a webhook delivery, per provider
DELIVERY_ID_HEADERS = ("paypal-transmission-id", "stripe-signature")


def _delivery_id(request: Request) -> str | None:
    for header in DELIVERY_ID_HEADERS:
        value = request.headers.get(header)
        if value:
            # Stripe has no delivery ID; its signature timestamp identifies the attempt
            return value.split(",")[0]
    return None


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Middleware to log request latency.

    Provider calls happen inside checkout, verification and webhook
    requests, so a slow or failing provider shows up here first. Webhook
    lines carry the delivery identifier; a 5xx on a webhook means the
    provider will redeliver.

    Args:
        request: The incoming request.
        call_next: The next middleware/handler in the chain.

    Returns:
        Response: The response from the handler.
    """
    start_time = time.perf_counter()
    method = request.method
    path = request.url.path

    response = None
    error_occurred = False

    try:
        response = await call_next(request)
        return response
    except Exception:
        error_occurred = True
        raise
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response else 500
        log_data = {
            "method": method,
            "path": path,
            "status_code": status_code,
            "latency_ms": round(latency_ms, 2),
            "error": error_occurred,
        }
        log_msg = f"{method} {path} - {status_code} - {latency_ms:.2f}ms"

        if path.startswith(WEBHOOK_PATH_PREFIX):
            log_data["delivery_id"] = _delivery_id(request)
            log_msg = f"{log_msg} (delivery {log_data['delivery_id']})"
            if status_code >= 500:
                log_msg = f"{log_msg}, provider will redeliver"

        if path in QUIET_PATHS:
            if latency_ms > 100:
                logger.debug(log_msg, extra=log_data)
        elif error_occurred or status_code >= 500:
            logger.error(log_msg, extra=log_data)
        elif latency_ms > VERY_SLOW_REQUEST_THRESHOLD_MS:
            logger.error(f"VERY SLOW REQUEST: {log_msg}", extra=log_data)
        elif latency_ms > SLOW_REQUEST_THRESHOLD_MS:
            logger.warning(f"SLOW REQUEST: {log_msg}", extra=log_data)
        elif status_code >= 400:
            logger.warning(log_msg, extra=log_data)
        else:
            logger.info(log_msg, extra=log_data)

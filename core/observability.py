from __future__ import annotations

import logging
import os
from typing import Any, Optional

from core.settings import get_settings


logger = logging.getLogger("hris_core.observability")

_REDACTED_HEADERS = {"authorization", "cookie", "set-cookie", "x-api-token", "x-admin-token", "idempotency-key"}


def _before_send(event: dict[str, Any], hint: dict[str, Any] | None) -> dict[str, Any] | None:
    req = event.get("request") or {}
    hdrs = req.get("headers") or {}
    for k in list(hdrs.keys()):
        if str(k).lower() in _REDACTED_HEADERS:
            hdrs[k] = "[redacted]"
    req["headers"] = hdrs
    # Query strings may carry ?token=
    if req.get("query_string"):
        req["query_string"] = "[redacted]"
    event["request"] = req
    return event


def init_sentry() -> Optional[object]:
    """Initialize Sentry if SENTRY_DSN is set and sentry_sdk is installed.

    Returns the sentry SDK module when initialized, otherwise None.
    """
    settings = get_settings()
    dsn = (settings.sentry_dsn or "").strip()
    if not dsn:
        return None
    try:
        import sentry_sdk  # type: ignore
        from sentry_sdk.integrations.starlette import StarletteIntegration  # type: ignore
    except ImportError:
        logger.warning("SENTRY_DSN is set but sentry-sdk is not installed; error reporting disabled")
        return None

    sentry_sdk.init(
        dsn=dsn,
        traces_sample_rate=float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.0") or 0.0),
        environment=os.environ.get("SENTRY_ENV") or os.environ.get("ENV") or "dev",
        release=settings.app_version or None,
        integrations=[StarletteIntegration()],
        before_send=_before_send,
    )
    return sentry_sdk

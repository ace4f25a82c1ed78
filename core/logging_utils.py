from __future__ import annotations

import json
import logging
import re
from contextvars import ContextVar
from typing import Any, Optional


# TIN: ###-###-### with optional 3-5 digit branch code; SSS: ##-#######-#
_TIN_RE = re.compile(r"\b\d{3}-\d{3}-\d{3}(?:-\d{3,5})?\b")
_SSS_RE = re.compile(r"\b\d{2}-\d{7}-\d\b")
_EXTRA_KEYS = ("request_id", "handler", "method", "status", "company_id", "run_id", "request_number")


def _mask_groups(match: re.Match) -> str:
    *hidden, last = match.group(0).split("-")
    return "-".join("*" * len(group) for group in hidden) + "-" + last


def scrub_government_ids(text: str) -> str:
    """Mask TIN and SSS numbers, keeping the last group visible."""
    if not text:
        return text or ""
    return _SSS_RE.sub(_mask_groups, _TIN_RE.sub(_mask_groups, text))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        data: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "msg": scrub_government_ids(record.getMessage()),
        }
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)  # type: ignore[arg-type]
        rid = get_request_id()
        if rid and not hasattr(record, "request_id"):
            data["request_id"] = rid
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                data[key] = getattr(record, key)
        return json.dumps(data, ensure_ascii=False, default=str)


def configure_json_logging(level: int = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    # Remove other handlers to avoid duplicate logs
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)


def maybe_enable_json_logging() -> None:
    from core.settings import get_settings

    if get_settings().json_logs:
        configure_json_logging()


# Request-scoped context helpers
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(request_id: Optional[str]) -> None:
    _REQUEST_ID.set(request_id)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()

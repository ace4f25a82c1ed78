from __future__ import annotations

import base64
import datetime as dt
import json
from typing import Any


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64url_decode(data: str) -> bytes:
    s = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(s.encode())


def encode_cursor(payload: dict[str, Any]) -> str:
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode()
    return _b64url_encode(body)


def decode_cursor(token: str) -> dict[str, Any]:
    try:
        body = _b64url_decode(token)
        data = json.loads(body.decode())
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError("invalid cursor") from e
    if not isinstance(data, dict):
        raise ValueError("invalid cursor")
    return data


def keyset_cursor(created_at: dt.datetime, row_id: int) -> str:
    """Cursor for newest-first listings ordered by (created_at, id)."""
    return encode_cursor({"ts": created_at.isoformat(), "id": int(row_id)})


def parse_keyset_cursor(token: str) -> tuple[dt.datetime, int]:
    data = decode_cursor(token)
    try:
        return dt.datetime.fromisoformat(str(data["ts"])), int(data["id"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError("invalid cursor") from e

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Optional


def encode_cursor(dt: datetime, id: str) -> str:
    payload = {"t": dt.isoformat(), "id": id}
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


def decode_cursor(s: str) -> tuple[datetime, str]:
    data = json.loads(base64.urlsafe_b64decode(s.encode()).decode())
    return (_aware(datetime.fromisoformat(data["t"])), str(data["id"]))


def parse_before(value: Optional[str]) -> Optional[tuple[datetime, str]]:
    """Accept either an opaque keyset cursor or a bare ISO timestamp.

    A bare timestamp pairs with an empty id, so rows created at exactly that
    instant are excluded as well.
    """
    if not value:
        return None
    try:
        return decode_cursor(value)
    except (ValueError, KeyError, TypeError, binascii.Error, UnicodeDecodeError):
        pass
    return (_aware(datetime.fromisoformat(value.replace("Z", "+00:00"))), "")


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

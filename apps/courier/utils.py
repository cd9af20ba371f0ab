from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser


def now() -> float:
    return float(time.time())


def new_id(prefix: str, ts: Optional[float] = None) -> str:
    """Roughly time-ordered id, e.g. COD-1700000000000-1a2b3c4d."""
    millis = int((now() if ts is None else ts) * 1000)
    return f"{prefix}-{millis:013d}-{uuid.uuid4().hex[:8]}"


def iso_timestamp(value: Any) -> Optional[str]:
    """Payload timestamp (date string or epoch seconds) as naive-UTC ISO-8601, or None."""
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        else:
            dt = parser.parse(str(value).strip())
    except (ValueError, OverflowError, OSError):
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat()

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def now_epoch() -> float:
    return time.time()


def iso_z_from_epoch(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")

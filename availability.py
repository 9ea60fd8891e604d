# availability.py
# Scheduling gate shared by "start attempt" and "can I take this test?" checks.

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    # naive values are UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def is_available(test: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """
    Returns {"available": bool, "reason": str|None}.
    Rules are checked in order: status, start_at, then the deadline
    (allow_late_until if set, else end_at). Both boundaries are inclusive.
    """
    if (test.get("status") or "").upper() != "PUBLISHED":
        return {"available": False, "reason": "not published"}

    start_at = as_datetime(test.get("start_at"))
    if start_at is not None and now < start_at:
        return {"available": False, "reason": "not yet open"}

    deadline = as_datetime(test.get("allow_late_until")) or as_datetime(test.get("end_at"))
    if deadline is not None and now > deadline:
        return {"available": False, "reason": "past deadline"}

    return {"available": True, "reason": None}

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

# Receipts and export timestamps use the school's local time (UTC+0, no DST).
WEST_AFRICA_TZ = ZoneInfo("Africa/Abidjan")


def west_africa_now() -> datetime:
    """Get the current time in the West Africa timezone."""
    return datetime.now(WEST_AFRICA_TZ)


def payment_date_label(value: Any, fmt: str = "%d/%m/%Y %H:%M") -> str:
    """Render a stored ISO payment date as a local wall-clock label.

    Naive values are taken as UTC. Unparseable strings come back unchanged,
    anything else (``None`` for unpaid records) as an empty string.
    """
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return value
    elif isinstance(value, datetime):
        parsed = value
    else:
        return ""
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(WEST_AFRICA_TZ).strftime(fmt)

from __future__ import annotations

from datetime import date
from typing import Any

from utils.records import parse_month

MONTH_NAMES_FR = (
    "janvier",
    "février",
    "mars",
    "avril",
    "mai",
    "juin",
    "juillet",
    "août",
    "septembre",
    "octobre",
    "novembre",
    "décembre",
)


def format_amount(amount: Any, currency: str = "FCFA") -> str:
    """Format a currency amount the way receipts show it: ``30 000 FCFA``."""
    try:
        value = round(float(amount or 0))
    except (TypeError, ValueError):
        value = 0
    grouped = f"{abs(value):,}".replace(",", " ")
    sign = "-" if value < 0 else ""
    return f"{sign}{grouped} {currency}".strip()


def month_label(month: str) -> str:
    year, number = parse_month(month)
    return f"{MONTH_NAMES_FR[number - 1]} {year}"


def month_options(today: date | None = None, count: int = 12) -> list[dict[str, str]]:
    """The current month and the ``count - 1`` before it, newest first."""
    today = today or date.today()
    year, number = today.year, today.month
    options = []
    for _ in range(count):
        value = f"{year:04d}-{number:02d}"
        options.append({"value": value, "label": month_label(value)})
        number -= 1
        if number == 0:
            year, number = year - 1, 12
    return options

from __future__ import annotations

import math
import re
import uuid
from decimal import Decimal
from typing import Any

from utils.errors import InvalidAmount

MONTH_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def new_id() -> str:
    return uuid.uuid4().hex


def parse_month(month: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` string into ``(year, month)``."""
    match = MONTH_RE.match(month or "") if isinstance(month, str) else None
    if not match:
        raise ValueError(f"month must look like YYYY-MM, got {month!r}")
    return int(match.group(1)), int(match.group(2))


def validate_amount(value: Any, field: str = "amount", allow_zero: bool = True) -> float:
    """Return ``value`` as a float, or raise :class:`InvalidAmount`.

    Booleans, strings, NaN and infinities are rejected, as are negative
    values and, when ``allow_zero`` is false, zero.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidAmount(f"{field} must be a number, got {value!r}")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise InvalidAmount(f"{field} must be a finite number")
    if number < 0 or (number == 0 and not allow_zero):
        raise InvalidAmount(f"{field} must be {'non-negative' if allow_zero else 'positive'}, got {value!r}")
    return number


def clean_services(items: Any) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        raise ValueError("services must be a list")
    out = []
    for item in items:
        if not isinstance(item, dict) or not item.get("serviceId"):
            raise ValueError("each service needs a serviceId")
        out.append(
            {
                "serviceId": str(item["serviceId"]),
                "serviceName": item.get("serviceName") or "",
                "price": validate_amount(item.get("price"), "price"),
                "isPaid": bool(item.get("isPaid", False)),
            }
        )
    return out


def clean_additional_fees(items: Any) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        raise ValueError("additionalFees must be a list")
    out = []
    for item in items:
        if not isinstance(item, dict):
            raise ValueError("each additional fee must be an object")
        out.append(
            {
                "id": str(item.get("id") or new_id()),
                "name": item.get("name") or "",
                "amount": validate_amount(item.get("amount"), "amount"),
                "isPaid": bool(item.get("isPaid", False)),
            }
        )
    return out


def clean_payment_items(payment: dict[str, Any]) -> dict[str, Any]:
    """Check the nested service and fee entries of a stored payment, in place."""
    payment["services"] = clean_services(payment.get("services") or [])
    payment["additionalFees"] = clean_additional_fees(payment.get("additionalFees") or [])
    return payment


def recompute_totals(payment: dict[str, Any]) -> dict[str, Any]:
    """Refresh the derived fields of a student payment in place.

    totalAmount = monthlyFee + sum(service prices) + sum(additional fee amounts)
    remainingAmount = totalAmount - paidAmount, isPaid = remainingAmount <= 0
    """
    services_total = sum(float(s.get("price") or 0) for s in payment.get("services") or [])
    fees_total = sum(float(f.get("amount") or 0) for f in payment.get("additionalFees") or [])
    total = float(payment.get("monthlyFee") or 0) + services_total + fees_total
    remaining = total - float(payment.get("paidAmount") or 0)
    payment["totalAmount"] = total
    payment["remainingAmount"] = remaining
    payment["isPaid"] = remaining <= 0
    return payment


def new_student_payment(student_id: str, class_id: str, month: str, monthly_fee: float) -> dict[str, Any]:
    year, _ = parse_month(month)
    payment = {
        "id": new_id(),
        "studentId": student_id,
        "classId": class_id,
        "month": month,
        "year": year,
        "monthlyFee": float(monthly_fee or 0),
        "services": [],
        "additionalFees": [],
        "paidAmount": 0.0,
        "paymentDate": None,
    }
    return recompute_totals(payment)

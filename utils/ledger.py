from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from utils.records import (
    clean_additional_fees,
    clean_services,
    new_id,
    new_student_payment,
    parse_month,
    recompute_totals,
    validate_amount,
)
from utils.timezone_helpers import west_africa_now

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "studentId",
    "classId",
    "month",
    "monthlyFee",
    "services",
    "additionalFees",
    "paidAmount",
    "paymentDate",
)


class PaymentLedger:
    """Per-student, per-month payment records derived from the fee config.

    Every mutation goes through :meth:`_store`, which recomputes the totals
    before the record is written, so stored records are never stale.
    There is at most one record per ``(studentId, month)``.
    """

    def __init__(self, adapter, fees, clock: Callable[[], Any] = west_africa_now):
        self.adapter = adapter
        self.fees = fees
        self.clock = clock

    def _store(self, payment: dict[str, Any]) -> dict[str, Any]:
        return self.adapter.save("payments", recompute_totals(payment))

    def get_payment(self, payment_id: str) -> Optional[dict[str, Any]]:
        return self.adapter.get("payments", payment_id)

    def get_student_payment(self, student_id: str, month: str) -> Optional[dict[str, Any]]:
        rows = self.adapter.find("payments", {"studentId": student_id, "month": month})
        return rows[0] if rows else None

    def get_class_fees(self, class_id: str) -> Optional[dict[str, Any]]:
        return self.fees.get_class_fees(class_id)

    def create_student_payment(self, student_id: str, class_id: str, month: str) -> str:
        """Return the id of the student's record for ``month``, creating it if needed.

        A new record copies the class's current monthly fee; later changes to
        the class fee never touch it.
        """
        parse_month(month)
        existing = self.get_student_payment(student_id, month)
        if existing is not None:
            return existing["id"]
        config = self.fees.get_class_fees(class_id)
        monthly_fee = config["monthlyFee"] if config else 0.0
        payment = new_student_payment(student_id, class_id, month, monthly_fee)
        self._store(payment)
        logger.debug("Created payment %s for student %s (%s)", payment["id"], student_id, month)
        return payment["id"]

    def materialize_month(self, class_id: str, month: str, roster) -> list[dict[str, Any]]:
        """Make sure every student of the class has a record for ``month``."""
        created = 0
        for student in roster.get_students_by_class(class_id):
            if self.get_student_payment(student["id"], month) is None:
                self.create_student_payment(student["id"], class_id, month)
                created += 1
        if created:
            logger.info("Created %d payment records for class %s (%s)", created, class_id, month)
        return self.get_payments_by_class_and_month(class_id, month)

    def update_student_payment(self, payment_id: str, changes: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        payment = self.get_payment(payment_id)
        if payment is None:
            return None
        updated = dict(payment)
        for field in _EDITABLE_FIELDS:
            if field not in changes:
                continue
            value = changes[field]
            if field in ("monthlyFee", "paidAmount"):
                value = validate_amount(value, field)
            elif field == "services":
                value = clean_services(value)
            elif field == "additionalFees":
                value = clean_additional_fees(value)
            elif field == "month":
                updated["year"], _ = parse_month(value)
            updated[field] = value
        if (updated["studentId"], updated["month"]) != (payment["studentId"], payment["month"]):
            clash = self.get_student_payment(updated["studentId"], updated["month"])
            if clash is not None and clash["id"] != payment_id:
                raise ValueError(
                    f"student {updated['studentId']} already has a payment for {updated['month']}"
                )
        return self._store(updated)

    def add_service_to_payment(self, payment_id: str, service_id: str) -> Optional[dict[str, Any]]:
        payment = self.get_payment(payment_id)
        if payment is None:
            return None
        service = self.fees.get_service(service_id)
        if service is None or any(s["serviceId"] == service_id for s in payment["services"]):
            return payment
        payment["services"] = payment["services"] + [
            {
                "serviceId": service["id"],
                "serviceName": service["name"],
                "price": service["price"],
                "isPaid": False,
            }
        ]
        return self._store(payment)

    def remove_service_from_payment(self, payment_id: str, service_id: str) -> Optional[dict[str, Any]]:
        payment = self.get_payment(payment_id)
        if payment is None:
            return None
        payment["services"] = [s for s in payment["services"] if s["serviceId"] != service_id]
        return self._store(payment)

    def add_additional_fee(self, payment_id: str, name: str, amount: Any) -> Optional[dict[str, Any]]:
        payment = self.get_payment(payment_id)
        if payment is None:
            return None
        label = (name or "").strip()
        if not label:
            raise ValueError("fee name is required")
        payment["additionalFees"] = payment["additionalFees"] + [
            {"id": new_id(), "name": label, "amount": validate_amount(amount, "amount"), "isPaid": False}
        ]
        return self._store(payment)

    def remove_additional_fee(self, payment_id: str, fee_id: str) -> Optional[dict[str, Any]]:
        payment = self.get_payment(payment_id)
        if payment is None:
            return None
        payment["additionalFees"] = [f for f in payment["additionalFees"] if f["id"] != fee_id]
        return self._store(payment)

    def record_payment(self, payment_id: str, amount: Any) -> Optional[dict[str, Any]]:
        """Add a cash receipt; overpayment is kept (remainingAmount goes negative)."""
        received = validate_amount(amount, "amount", allow_zero=False)
        payment = self.get_payment(payment_id)
        if payment is None:
            return None
        payment["paidAmount"] = float(payment["paidAmount"] or 0) + received
        payment["paymentDate"] = self.clock().isoformat()
        return self._store(payment)

    def get_payments_by_class_and_month(self, class_id: str, month: str) -> list[dict[str, Any]]:
        return self.adapter.find("payments", {"classId": class_id, "month": month})

    def month_summary(self, class_id: str, month: str) -> dict[str, Any]:
        payments = self.get_payments_by_class_and_month(class_id, month)
        return {
            "classId": class_id,
            "month": month,
            "count": len(payments),
            "paidCount": sum(1 for p in payments if p["isPaid"]),
            "totalAmount": sum(p["totalAmount"] for p in payments),
            "paidAmount": sum(p["paidAmount"] for p in payments),
            "remainingAmount": sum(p["remainingAmount"] for p in payments),
        }

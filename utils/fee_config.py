from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from utils.records import new_id, validate_amount

logger = logging.getLogger(__name__)

DEFAULT_SERVICES = (
    {"name": "Transport", "price": 25000, "description": "Service de transport scolaire", "isRequired": False},
    {"name": "Cantine", "price": 15000, "description": "Restauration scolaire", "isRequired": False},
    {"name": "Bibliothèque", "price": 5000, "description": "Accès à la bibliothèque", "isRequired": False},
)

_SERVICE_FIELDS = ("name", "price", "description", "isRequired")


def _service_name(value: Any) -> str:
    name = (value or "").strip() if isinstance(value, str) else ""
    if not name:
        raise ValueError("service name is required")
    return name


class FeeConfigStore:
    """Service catalog and per-class fee rules (monthly fee, registration fees).

    Unknown ids are silent no-ops: updates return ``None``, removals ``False``.
    """

    def __init__(self, adapter):
        self.adapter = adapter

    # -- services ---------------------------------------------------------

    def list_services(self) -> list[dict[str, Any]]:
        return self.adapter.load("services")

    def get_service(self, service_id: str) -> Optional[dict[str, Any]]:
        return self.adapter.get("services", service_id)

    def add_service(self, data: Mapping[str, Any]) -> str:
        service = {
            "id": new_id(),
            "name": _service_name(data.get("name")),
            "price": validate_amount(data.get("price"), "price"),
            "description": data.get("description") or None,
            "isRequired": bool(data.get("isRequired", False)),
        }
        self.adapter.save("services", service)
        return service["id"]

    def update_service(self, service_id: str, changes: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        service = self.get_service(service_id)
        if service is None:
            return None
        updated = dict(service)
        for field in _SERVICE_FIELDS:
            if field not in changes:
                continue
            value = changes[field]
            if field == "price":
                value = validate_amount(value, "price")
            elif field == "name":
                value = _service_name(value)
            elif field == "isRequired":
                value = bool(value)
            updated[field] = value
        return self.adapter.save("services", updated)

    def delete_service(self, service_id: str) -> bool:
        # Payments keep their own copy of name and price.
        return self.adapter.delete("services", service_id)

    def seed_default_services(self) -> list[str]:
        if self.list_services():
            return []
        ids = [self.add_service(service) for service in DEFAULT_SERVICES]
        logger.info("Seeded %d default services", len(ids))
        return ids

    # -- class fees -------------------------------------------------------

    def _assemble(self, config: Mapping[str, Any]) -> dict[str, Any]:
        fees = self.adapter.find("inscriptionFees", {"classId": config["classId"]})
        return {
            "id": config["id"],
            "classId": config["classId"],
            "className": config["className"],
            "monthlyFee": config["monthlyFee"],
            "registrationFees": [
                {"id": f["id"], "name": f["name"], "amount": f["amount"], "isRequired": f["isRequired"]}
                for f in fees
            ],
        }

    def _config_row(self, class_id: str) -> Optional[dict[str, Any]]:
        rows = self.adapter.find("classFees", {"classId": class_id})
        return rows[0] if rows else None

    def list_class_fees(self) -> list[dict[str, Any]]:
        return [self._assemble(row) for row in self.adapter.load("classFees")]

    def get_class_fees(self, class_id: str) -> Optional[dict[str, Any]]:
        row = self._config_row(class_id)
        return self._assemble(row) if row else None

    def set_class_monthly_fee(self, class_id: str, class_name: str, amount: Any) -> dict[str, Any]:
        monthly_fee = validate_amount(amount, "monthlyFee")
        row = self._config_row(class_id)
        if row is None:
            row = {"id": new_id(), "classId": class_id}
        row.update({"className": class_name, "monthlyFee": monthly_fee})
        self.adapter.save("classFees", row)
        return self._assemble(row)

    def add_registration_fee(self, class_id: str, fee: Mapping[str, Any]) -> Optional[str]:
        """Append a registration fee to an existing class config.

        Returns the new fee id, or ``None`` when the class has no config yet
        (call :meth:`set_class_monthly_fee` first).
        """
        if self._config_row(class_id) is None:
            logger.debug("No fee config for class %s; registration fee ignored", class_id)
            return None
        name = (fee.get("name") or "").strip()
        if not name:
            raise ValueError("registration fee name is required")
        record = {
            "id": new_id(),
            "classId": class_id,
            "name": name,
            "amount": validate_amount(fee.get("amount"), "amount"),
            "isRequired": bool(fee.get("isRequired", False)),
        }
        self.adapter.save("inscriptionFees", record)
        return record["id"]

    def remove_registration_fee(self, class_id: str, fee_id: str) -> bool:
        fee = self.adapter.get("inscriptionFees", fee_id)
        if fee is None or fee["classId"] != class_id:
            return False
        return self.adapter.delete("inscriptionFees", fee_id)

    def rename_class(self, class_id: str, class_name: str) -> bool:
        row = self._config_row(class_id)
        if row is None or row["className"] == class_name:
            return False
        row["className"] = class_name
        self.adapter.save("classFees", row)
        return True

    def sync_class_names(self, roster) -> int:
        """Copy the roster's current class names into the fee configs."""
        changed = 0
        for cls in roster.list_classes():
            if self.rename_class(cls["id"], cls["name"]):
                changed += 1
        if changed:
            logger.info("Updated class name on %d fee configs", changed)
        return changed

from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterable, Mapping, Optional

from utils.errors import UnsupportedFormat
from utils.records import clean_payment_items

logger = logging.getLogger(__name__)

MIGRATION_FLAG = "db-migration-completed"

_SQL_TYPES = {
    "text": "TEXT",
    "int": "INTEGER",
    "real": "REAL",
    "bool": "BOOLEAN",
    "json": "TEXT",
}

_TRUTHY = {"1", "true", "yes", "on", "y"}


def _coerce(kind: str, value: Any) -> Any:
    if value is None:
        return [] if kind == "json" else None
    if kind == "text":
        return value if isinstance(value, str) else str(value)
    if kind == "int":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        return int(value)
    if kind == "real":
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            raise ValueError(f"expected a finite number, got {value!r}")
        return number
    if kind == "bool":
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return bool(value)
    if kind == "json":
        if isinstance(value, (str, bytes)):
            value = json.loads(value) if value else []
        if not isinstance(value, (list, dict)):
            raise ValueError(f"expected a JSON list, got {value!r}")
        return value
    raise ValueError(f"unknown column kind {kind!r}")


class Table:
    """A collection of records and the relational table that holds it.

    ``key`` is the collection name used by the stores and in JSON dumps,
    ``name`` the SQL table, ``legacy_key`` the flat document name.
    Columns are ``(name, kind, default)`` tuples; ``id`` is implicit.
    """

    def __init__(
        self,
        key: str,
        name: str,
        columns: Iterable[tuple[str, str, Any]],
        legacy_key: Optional[str] = None,
        unique: Iterable[str] = (),
        indexes: Iterable[tuple[str, ...]] = (),
    ):
        self.key = key
        self.name = name
        self.columns: tuple[tuple[str, str, Any], ...] = (("id", "text", None),) + tuple(columns)
        self.legacy_key = legacy_key
        self.unique = tuple(unique)
        self.indexes = tuple(indexes)
        self._kinds = {col: kind for col, kind, _ in self.columns}

    def __repr__(self) -> str:
        return f"<Table {self.name} ({self.key})>"

    @property
    def column_names(self) -> list[str]:
        return [col for col, _, _ in self.columns]

    def has_column(self, column: str) -> bool:
        return column in self._kinds

    def create_sql(self) -> str:
        lines = ["seq INTEGER PRIMARY KEY AUTOINCREMENT", "id TEXT NOT NULL UNIQUE"]
        for col, kind, _ in self.columns[1:]:
            lines.append(f"{col} {_SQL_TYPES[kind]}")
        for col in self.unique:
            lines.append(f"UNIQUE ({col})")
        body = ",\n            ".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n            {body}\n        )"

    def index_sql(self) -> list[str]:
        statements = []
        for cols in self.indexes:
            label = "_".join(c.lower() for c in cols)
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_{self.name}_{label} ON {self.name} ({', '.join(cols)})"
            )
        return statements

    def normalize(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Project ``record`` onto this table's columns with canonical types.

        Raises ``ValueError`` when a value cannot be coerced or the id is missing.
        """
        out: dict[str, Any] = {}
        for col, kind, default in self.columns:
            value = record.get(col)
            if value is None:
                value = list(default) if isinstance(default, list) else default
            out[col] = _coerce(kind, value)
        if not out["id"]:
            raise ValueError(f"{self.key} record without an id")
        return out

    def to_params(self, record: Mapping[str, Any]) -> dict[str, Any]:
        params = {}
        for col, kind, _ in self.columns:
            value = record.get(col)
            if kind == "json":
                value = json.dumps(value if value is not None else [], ensure_ascii=False)
            params[col] = value
        return params

    def from_row(self, row: Mapping[str, Any]) -> dict[str, Any]:
        return {col: _coerce(kind, row.get(col)) for col, kind, _ in self.columns}


TABLES: dict[str, Table] = {
    table.key: table
    for table in (
        Table(
            "classes",
            "classes",
            [("name", "text", None), ("studentCount", "int", 0)],
            legacy_key="school-classes",
        ),
        Table(
            "students",
            "students",
            [
                ("autoId", "int", None),
                ("firstName", "text", None),
                ("lastName", "text", None),
                ("birthDate", "text", None),
                ("birthPlace", "text", ""),
                ("studentNumber", "text", ""),
                ("parentPhone", "text", ""),
                ("gender", "text", None),
                ("classId", "text", None),
            ],
            legacy_key="school-students",
            indexes=[("classId",)],
        ),
        Table(
            "teachers",
            "teachers",
            [
                ("autoId", "int", None),
                ("firstName", "text", None),
                ("lastName", "text", None),
                ("email", "text", None),
                ("phone", "text", None),
                ("subject", "text", None),
                ("salary", "real", None),
            ],
            legacy_key="school-teachers",
        ),
        Table(
            "schedules",
            "schedules",
            [
                ("teacherId", "text", None),
                ("day", "text", None),
                ("startTime", "text", None),
                ("endTime", "text", None),
                ("className", "text", None),
            ],
            legacy_key="school-schedules",
        ),
        Table(
            "classSchedules",
            "class_schedules",
            [
                ("classId", "text", None),
                ("teacherId", "text", None),
                ("subject", "text", None),
                ("day", "text", None),
                ("startTime", "text", None),
                ("endTime", "text", None),
            ],
            legacy_key="class-schedules",
        ),
        Table(
            "subjects",
            "subjects",
            [
                ("classId", "text", None),
                ("semester", "text", None),
                ("name", "text", None),
                ("coefficient", "real", 1.0),
            ],
            legacy_key="school-subjects",
        ),
        Table(
            "grades",
            "grades",
            [
                ("studentId", "text", None),
                ("subjectId", "text", None),
                ("type", "text", None),
                ("number", "int", None),
                ("value", "real", None),
            ],
            legacy_key="school-grades",
        ),
        Table(
            "attendance",
            "attendance",
            [
                ("scheduleSlotId", "text", None),
                ("date", "text", None),
                ("status", "text", None),
                ("studentId", "text", None),
                ("teacherId", "text", None),
                ("justification", "text", None),
            ],
            legacy_key="attendance-records",
        ),
        Table(
            "payments",
            "payments",
            [
                ("studentId", "text", None),
                ("classId", "text", None),
                ("month", "text", None),
                ("year", "int", None),
                ("monthlyFee", "real", 0.0),
                ("services", "json", []),
                ("additionalFees", "json", []),
                ("totalAmount", "real", 0.0),
                ("paidAmount", "real", 0.0),
                ("remainingAmount", "real", 0.0),
                ("isPaid", "bool", False),
                ("paymentDate", "text", None),
            ],
            legacy_key="school-payments",
            indexes=[("classId", "month"), ("studentId", "month")],
        ),
        Table(
            "services",
            "services",
            [
                ("name", "text", None),
                ("price", "real", 0.0),
                ("description", "text", None),
                ("isRequired", "bool", False),
            ],
            legacy_key="school-services",
        ),
        Table(
            "classFees",
            "monthly_fees",
            [
                ("classId", "text", None),
                ("className", "text", None),
                ("monthlyFee", "real", 0.0),
            ],
            legacy_key="school-class-fees",
            unique=["classId"],
        ),
        Table(
            "inscriptionFees",
            "inscription_fees",
            [
                ("classId", "text", None),
                ("name", "text", None),
                ("amount", "real", 0.0),
                ("isRequired", "bool", False),
            ],
            legacy_key="school-inscription-fees",
            indexes=[("classId",)],
        ),
        Table(
            "teacherPayments",
            "teacher_payments",
            [
                ("teacherId", "text", None),
                ("month", "text", None),
                ("year", "int", None),
                ("salary", "real", 0.0),
                ("bonuses", "json", []),
                ("deductions", "json", []),
                ("totalAmount", "real", 0.0),
                ("isPaid", "bool", False),
                ("paymentDate", "text", None),
            ],
            legacy_key="school-teacher-payments",
        ),
    )
}

TABLES_BY_NAME: dict[str, Table] = {table.name: table for table in TABLES.values()}


def get_table(key: str) -> Table:
    try:
        return TABLES[key]
    except KeyError:
        raise KeyError(f"unknown collection {key!r}") from None


def ensure_core_tables(adapter) -> None:
    """Create every table the fee/payment core needs. Safe to run repeatedly."""
    adapter.ensure_tables(list(TABLES.values()))


def import_legacy_data(adapter, legacy_store) -> dict[str, int]:
    """Upsert the flat legacy documents into ``adapter``.

    Rows are written by id, so running this twice leaves a single copy of
    every record. Class fee documents may still carry their registration
    fees inline; those are split into ``inscriptionFees`` rows.
    """
    summary: dict[str, int] = {}
    for table in TABLES.values():
        if not table.legacy_key:
            continue
        raw = legacy_store.get(table.legacy_key)
        if not raw:
            continue
        if not isinstance(raw, list):
            raise UnsupportedFormat(f"legacy document {table.legacy_key} is not a list")
        count = 0
        for item in raw:
            if not isinstance(item, dict) or not item.get("id"):
                logger.warning("Skipping legacy %s entry without an id", table.key)
                continue
            try:
                if table.key == "classFees":
                    count_fees = _import_nested_registration_fees(adapter, item)
                    if count_fees:
                        summary["inscriptionFees"] = summary.get("inscriptionFees", 0) + count_fees
                record = table.normalize(item)
                if table.key == "payments":
                    clean_payment_items(record)
                adapter.save(table.key, record)
            except (TypeError, ValueError) as exc:
                raise UnsupportedFormat(f"legacy {table.key} entry {item.get('id')!r}: {exc}") from exc
            count += 1
        summary[table.key] = summary.get(table.key, 0) + count
    return summary


def _import_nested_registration_fees(adapter, class_fee: Mapping[str, Any]) -> int:
    table = TABLES["inscriptionFees"]
    count = 0
    for fee in class_fee.get("registrationFees") or []:
        if not isinstance(fee, dict) or not fee.get("id"):
            logger.warning("Skipping legacy registration fee without an id (class %s)", class_fee.get("classId"))
            continue
        adapter.save(table.key, table.normalize({**fee, "classId": class_fee.get("classId")}))
        count += 1
    return count


def run_legacy_import(adapter, legacy_store) -> Optional[dict[str, int]]:
    """Run :func:`import_legacy_data` once per installation.

    Returns the import summary, or ``None`` when the guard flag says the
    import already happened.
    """
    if legacy_store.get(MIGRATION_FLAG):
        logger.debug("Legacy import already completed; skipping")
        return None
    try:
        summary = import_legacy_data(adapter, legacy_store)
    except Exception:
        logger.exception("Legacy import failed")
        raise
    legacy_store.set(MIGRATION_FLAG, True)
    logger.info("Legacy import completed: %s", summary or "nothing to import")
    return summary

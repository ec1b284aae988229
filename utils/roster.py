from __future__ import annotations

from collections import Counter
from typing import Any


class StorageRoster:
    """Read-only view of the classes and students held in storage."""

    def __init__(self, adapter):
        self.adapter = adapter

    def get_students_by_class(self, class_id: str) -> list[dict[str, Any]]:
        return self.adapter.find("students", {"classId": class_id})

    def list_classes(self) -> list[dict[str, Any]]:
        counts = Counter(s["classId"] for s in self.adapter.load("students"))
        return [
            {"id": c["id"], "name": c["name"], "studentCount": counts.get(c["id"], 0)}
            for c in self.adapter.load("classes")
        ]

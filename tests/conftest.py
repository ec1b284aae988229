import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from utils.context import FeeContext
from utils.kvstore import FlatDocumentStore
from utils.schema import ensure_core_tables
from utils.storage import FlatDocumentAdapter, SnapshotSqlAdapter, SqlEngineAdapter

BACKENDS = ["sqlite", "snapshot", "flat"]


def build(backend, root):
    if backend == "sqlite":
        return SqlEngineAdapter(f"sqlite:///{root / 'fees.db'}")
    if backend == "snapshot":
        return SnapshotSqlAdapter(FlatDocumentStore(root / "data"))
    return FlatDocumentAdapter(FlatDocumentStore(root / "data"))


@pytest.fixture
def make_adapter(tmp_path):
    """Return a factory opening a ready adapter on tmp_path (reopen = restart)."""
    opened = []

    def factory(backend, root=None):
        adapter = build(backend, root or tmp_path)
        adapter.initialize()
        ensure_core_tables(adapter)
        opened.append(adapter)
        return adapter

    yield factory
    for adapter in opened:
        adapter.close()


@pytest.fixture(params=BACKENDS)
def backend(request):
    return request.param


@pytest.fixture
def adapter(make_adapter, backend):
    return make_adapter(backend)


@pytest.fixture
def ctx(adapter):
    return FeeContext(adapter)


def add_student(adapter, student_id, class_id, first="Awa", last="Traoré"):
    adapter.save(
        "students",
        {
            "id": student_id,
            "firstName": first,
            "lastName": last,
            "birthDate": "2015-03-02",
            "gender": "female",
            "classId": class_id,
        },
    )


def assert_consistent(payment):
    services = sum(s["price"] for s in payment["services"])
    fees = sum(f["amount"] for f in payment["additionalFees"])
    assert payment["totalAmount"] == payment["monthlyFee"] + services + fees
    assert payment["remainingAmount"] == payment["totalAmount"] - payment["paidAmount"]
    assert payment["isPaid"] == (payment["remainingAmount"] <= 0)

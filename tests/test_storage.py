import threading

import pytest

from conftest import build
from utils.errors import NotInitialized, QueryFailed
from utils.storage import FlatDocumentAdapter, SnapshotSqlAdapter, SqlEngineAdapter, build_adapter


def _service(service_id, name="Transport", price=25000):
    return {"id": service_id, "name": name, "price": price, "description": None, "isRequired": False}


@pytest.mark.parametrize("backend", ["sqlite", "snapshot", "flat"])
def test_calls_before_initialize_raise(tmp_path, backend):
    adapter = build(backend, tmp_path)
    with pytest.raises(NotInitialized):
        adapter.load("services")
    with pytest.raises(NotInitialized):
        adapter.save("services", _service("s1"))
    with pytest.raises(NotInitialized):
        adapter.query("SELECT 1")


@pytest.mark.parametrize("backend", ["sqlite", "snapshot"])
def test_malformed_statement_raises_query_failed(make_adapter, backend):
    adapter = make_adapter(backend)
    with pytest.raises(QueryFailed):
        adapter.query("SELEC * FROM services")
    with pytest.raises(QueryFailed):
        adapter.execute("INSERT INTO nowhere (id) VALUES (?)", ["x"])


def test_positional_and_named_parameters(make_adapter):
    adapter = make_adapter("sqlite")
    result = adapter.execute(
        "INSERT INTO services (id, name, price, isRequired) VALUES (?, ?, ?, ?)",
        ["s1", "Cantine", 15000, False],
    )
    assert result["changes"] == 1
    assert result["lastInsertRowid"] == 1
    adapter.execute("UPDATE services SET price = :price WHERE id = :id", {"price": 17500, "id": "s1"})
    row = adapter.query_one("SELECT name, price FROM services WHERE id = ?", ["s1"])
    assert row == {"name": "Cantine", "price": 17500}
    assert adapter.query_one("SELECT id FROM services WHERE id = :id", {"id": "missing"}) is None


def test_flat_backend_rejects_statements(make_adapter):
    adapter = make_adapter("flat")
    with pytest.raises(QueryFailed):
        adapter.query("SELECT 1")
    with pytest.raises(QueryFailed):
        adapter.execute("DELETE FROM services")


def test_read_after_write(adapter):
    adapter.save("services", _service("s1"))
    assert adapter.get("services", "s1")["price"] == 25000.0
    adapter.save("services", _service("s1", price=30000))
    assert adapter.get("services", "s1")["price"] == 30000.0
    assert adapter.delete("services", "s1") is True
    assert adapter.get("services", "s1") is None
    assert adapter.delete("services", "s1") is False


def test_upsert_keeps_insertion_order(adapter):
    for sid in ("a", "b", "c"):
        adapter.save("services", _service(sid, name=sid.upper()))
    adapter.save("services", _service("a", name="A2"))
    assert [s["id"] for s in adapter.load("services")] == ["a", "b", "c"]
    assert adapter.load("services")[0]["name"] == "A2"


def test_find_matches_all_criteria(adapter):
    adapter.save("inscriptionFees", {"id": "f1", "classId": "c1", "name": "Dossier", "amount": 5000})
    adapter.save("inscriptionFees", {"id": "f2", "classId": "c2", "name": "Dossier", "amount": 5000})
    adapter.save("inscriptionFees", {"id": "f3", "classId": "c1", "name": "Tenue", "amount": 8000})
    assert [f["id"] for f in adapter.find("inscriptionFees", {"classId": "c1"})] == ["f1", "f3"]
    assert [f["id"] for f in adapter.find("inscriptionFees", {"classId": "c1", "name": "Tenue"})] == ["f3"]
    with pytest.raises(QueryFailed):
        adapter.find("inscriptionFees", {"colour": "red"})


def test_json_columns_round_trip(adapter):
    services = [{"serviceId": "s1", "serviceName": "Cantine", "price": 15000.0, "isPaid": False}]
    adapter.save(
        "payments",
        {"id": "p1", "studentId": "st1", "classId": "c1", "month": "2025-01", "year": 2025, "services": services},
    )
    stored = adapter.get("payments", "p1")
    assert stored["services"] == services
    assert stored["additionalFees"] == []
    assert stored["isPaid"] is False


def test_class_fee_config_is_unique_per_class(adapter):
    adapter.save("classFees", {"id": "cf1", "classId": "c1", "className": "CP1", "monthlyFee": 30000})
    with pytest.raises(QueryFailed):
        adapter.save("classFees", {"id": "cf2", "classId": "c1", "className": "CP1", "monthlyFee": 35000})
    assert len(adapter.load("classFees")) == 1


def test_unknown_collection_raises(adapter):
    with pytest.raises(QueryFailed):
        adapter.load("parents")


def test_replace_swaps_whole_collections(adapter):
    adapter.save("services", _service("old"))
    adapter.replace({"services": [_service("new1"), _service("new2")], "teachers": []})
    assert [s["id"] for s in adapter.load("services")] == ["new1", "new2"]


@pytest.mark.parametrize("backend", ["sqlite", "snapshot", "flat"])
def test_data_survives_restart(make_adapter, backend):
    first = make_adapter(backend)
    first.save("services", _service("s1", name="Bibliothèque", price=5000))
    first.close()
    second = make_adapter(backend)
    assert second.get("services", "s1")["name"] == "Bibliothèque"


def test_snapshot_reverts_when_persisting_fails(make_adapter, monkeypatch):
    adapter = make_adapter("snapshot")
    adapter.save("services", _service("kept"))

    def boom(key, data):
        raise QueryFailed("disk full")

    monkeypatch.setattr(adapter.store, "set_blob", boom)
    with pytest.raises(QueryFailed):
        adapter.save("services", _service("lost"))
    monkeypatch.undo()
    assert [s["id"] for s in adapter.load("services")] == ["kept"]


def test_build_adapter_picks_backend(tmp_path):
    sqlite = build_adapter({"FEE_STORAGE_BACKEND": "sqlite", "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'x.db'}"})
    snapshot = build_adapter({"FEE_STORAGE_BACKEND": "snapshot", "DATA_DIRECTORY": str(tmp_path)})
    flat = build_adapter({"FEE_STORAGE_BACKEND": "flat", "DATA_DIRECTORY": str(tmp_path)})
    assert type(sqlite) is SqlEngineAdapter
    assert type(snapshot) is SnapshotSqlAdapter
    assert type(flat) is FlatDocumentAdapter
    assert not sqlite.is_ready
    with pytest.raises(ValueError):
        build_adapter({"FEE_STORAGE_BACKEND": "mongo"})


def test_snapshot_serializes_concurrent_writers(make_adapter):
    adapter = make_adapter("snapshot")

    def writer(prefix):
        for n in range(10):
            adapter.save("services", _service(f"{prefix}-{n}", name=f"{prefix} {n}"))
            adapter.load("services")

    threads = [threading.Thread(target=writer, args=(f"t{i}",)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(adapter.load("services")) == 60
    restored = make_adapter("snapshot")
    assert len(restored.load("services")) == 60

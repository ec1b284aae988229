import io
import json

import pytest

from app import create_app
from conftest import add_student
from utils.formatting import month_label


@pytest.fixture
def client(ctx, tmp_path):
    app = create_app(overrides={"TESTING": True, "BACKUP_DIRECTORY": str(tmp_path / "exports")}, context=ctx)
    with app.test_client() as c:
        yield c


def test_health(client, backend):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json() == {"ok": True, "backend": backend}


def test_service_endpoints(client):
    r = client.post("/fees/services", json={"name": "Cantine", "price": 15000})
    assert r.status_code == 201
    sid = r.get_json()["id"]
    r = client.patch(f"/fees/services/{sid}", json={"price": 16000})
    assert r.get_json()["price"] == 16000.0
    assert [s["id"] for s in client.get("/fees/services").get_json()] == [sid]
    assert client.delete(f"/fees/services/{sid}").status_code == 200
    assert client.delete(f"/fees/services/{sid}").status_code == 404
    assert client.patch("/fees/services/nope", json={"price": 1}).status_code == 404


def test_invalid_amount_is_bad_request(client):
    r = client.post("/fees/services", json={"name": "Cantine", "price": -1})
    assert r.status_code == 400
    assert r.get_json()["ok"] is False
    assert client.post("/fees/services", data="nope").status_code == 400


def test_class_fee_endpoints(client):
    assert client.get("/fees/classes/c1").status_code == 404
    r = client.post("/fees/classes/c1/registration", json={"name": "Dossier", "amount": 10000})
    assert r.status_code == 404
    r = client.put("/fees/classes/c1/monthly", json={"className": "CP1", "monthlyFee": 30000})
    assert r.get_json()["monthlyFee"] == 30000.0
    r = client.post("/fees/classes/c1/registration", json={"name": "Dossier", "amount": 10000})
    assert r.status_code == 201
    fee_id = r.get_json()["id"]
    assert client.get("/fees/classes").get_json()[0]["registrationFees"][0]["id"] == fee_id
    assert client.delete(f"/fees/classes/c1/registration/{fee_id}").status_code == 200
    assert client.delete(f"/fees/classes/c1/registration/{fee_id}").status_code == 404


def test_month_view_and_payment_flow(client, ctx, adapter):
    add_student(adapter, "st1", "c1")
    add_student(adapter, "st2", "c1")
    ctx.fees.set_class_monthly_fee("c1", "CP1", 30000)
    sid = ctx.fees.add_service({"name": "Transport", "price": 25000})

    r = client.get("/payments/c1/2025-01")
    assert r.status_code == 200
    body = r.get_json()
    assert body["label"] == "janvier 2025"
    assert len(body["months"]) == 12
    assert body["months"][0]["label"] == month_label(body["months"][0]["value"])
    assert len(body["payments"]) == 2
    assert body["display"]["totalAmount"] == "60 000 FCFA"
    pid = body["payments"][0]["id"]
    assert body["display"]["paymentDates"][pid] == ""

    assert client.post(f"/payments/record/{pid}/services", json={"serviceId": sid}).get_json()["totalAmount"] == 55000.0
    assert client.post(f"/payments/record/{pid}/services", json={"serviceId": "nope"}).status_code == 404
    r = client.post(f"/payments/record/{pid}/pay", json={"amount": 20000})
    assert r.get_json()["remainingAmount"] == 35000.0
    assert client.post(f"/payments/record/{pid}/pay", json={"amount": 0}).status_code == 400
    r = client.post(f"/payments/record/{pid}/fees", json={"name": "Tenue", "amount": 5000})
    fee_id = r.get_json()["additionalFees"][0]["id"]
    assert client.delete(f"/payments/record/{pid}/fees/{fee_id}").get_json()["additionalFees"] == []
    assert client.delete(f"/payments/record/{pid}/services/{sid}").get_json()["totalAmount"] == 30000.0

    summary = client.get("/payments/c1/2025-01/summary").get_json()
    assert summary["paidAmount"] == 20000.0
    assert summary["count"] == 2


def test_unknown_payment_and_bad_month(client):
    assert client.get("/payments/record/nope").status_code == 404
    assert client.post("/payments/record/nope/pay", json={"amount": 100}).status_code == 404
    assert client.get("/payments/c1/2025-13").status_code == 400


def test_export_and_import(client, ctx):
    ctx.fees.add_service({"name": "Transport", "price": 25000})
    r = client.get("/database/export?format=sql")
    assert r.status_code == 200
    assert "attachment; filename=ecole-fees-" in r.headers["Content-Disposition"]
    dump = r.get_data()
    r = client.get("/database/export")
    snapshot = json.loads(r.get_data())
    assert snapshot["services"][0]["name"] == "Transport"

    ctx.fees.add_service({"name": "Cantine", "price": 15000})
    r = client.post(
        "/database/import",
        data={"file": (io.BytesIO(dump), "backup.sql")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    assert r.get_json()["imported"]["services"] == 1
    assert [s["name"] for s in ctx.fees.list_services()] == ["Transport"]

    r = client.post("/database/import", data=json.dumps(snapshot), content_type="application/json")
    assert r.status_code == 200


def test_import_rejects_bad_files(client):
    r = client.post(
        "/database/import",
        data={"file": (io.BytesIO(b"{}"), "backup.txt")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert client.post("/database/import", data="garbage").status_code == 400
    assert client.get("/database/export?format=xml").status_code == 400


def test_history_lists_written_exports(client, ctx, tmp_path):
    ctx.backup.write_export(tmp_path / "exports", fmt="json")
    history = client.get("/database/history").get_json()
    assert len(history) == 1
    assert history[0]["format"] == "json"

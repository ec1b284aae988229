import pytest

from utils.errors import InvalidAmount
from utils.fee_config import DEFAULT_SERVICES


def test_service_crud(ctx):
    fees = ctx.fees
    sid = fees.add_service({"name": " Cantine ", "price": 15000, "description": "Midi"})
    assert fees.get_service(sid) == {
        "id": sid,
        "name": "Cantine",
        "price": 15000.0,
        "description": "Midi",
        "isRequired": False,
    }
    updated = fees.update_service(sid, {"price": 17500, "isRequired": 1, "unknown": "ignored"})
    assert updated["price"] == 17500.0
    assert updated["isRequired"] is True
    assert "unknown" not in fees.get_service(sid)
    assert fees.delete_service(sid) is True
    assert fees.list_services() == []


def test_unknown_service_ids_are_no_ops(ctx):
    assert ctx.fees.update_service("nope", {"price": 1}) is None
    assert ctx.fees.delete_service("nope") is False


@pytest.mark.parametrize("price", [-1, "25000", None, True, float("inf")])
def test_service_price_is_validated(ctx, price):
    with pytest.raises(InvalidAmount):
        ctx.fees.add_service({"name": "Transport", "price": price})
    assert ctx.fees.list_services() == []


def test_service_name_required(ctx):
    with pytest.raises(ValueError):
        ctx.fees.add_service({"name": "   ", "price": 100})


def test_seed_default_services_only_once(ctx):
    ids = ctx.fees.seed_default_services()
    assert len(ids) == len(DEFAULT_SERVICES)
    assert ctx.fees.seed_default_services() == []
    assert [s["name"] for s in ctx.fees.list_services()] == ["Transport", "Cantine", "Bibliothèque"]


def test_set_monthly_fee_creates_then_overwrites(ctx):
    fees = ctx.fees
    created = fees.set_class_monthly_fee("c1", "CP1", 30000)
    assert created["monthlyFee"] == 30000.0
    assert created["registrationFees"] == []
    again = fees.set_class_monthly_fee("c1", "CP 1", 35000)
    assert again["id"] == created["id"]
    assert again["className"] == "CP 1"
    assert again["monthlyFee"] == 35000.0
    assert len(fees.list_class_fees()) == 1


def test_set_monthly_fee_rejects_negative(ctx):
    with pytest.raises(InvalidAmount):
        ctx.fees.set_class_monthly_fee("c1", "CP1", -5)
    assert ctx.fees.get_class_fees("c1") is None


def test_registration_fee_requires_config(ctx, adapter):
    assert ctx.fees.add_registration_fee("c9", {"name": "Dossier", "amount": 10000}) is None
    assert ctx.fees.get_class_fees("c9") is None
    assert adapter.load("inscriptionFees") == []


def test_registration_fee_add_and_remove(ctx):
    fees = ctx.fees
    fees.set_class_monthly_fee("c1", "CP1", 30000)
    fees.set_class_monthly_fee("c2", "CP2", 32000)
    fee_id = fees.add_registration_fee("c1", {"name": "Dossier", "amount": 10000, "isRequired": True})
    config = fees.get_class_fees("c1")
    assert config["registrationFees"] == [{"id": fee_id, "name": "Dossier", "amount": 10000.0, "isRequired": True}]
    assert fees.get_class_fees("c2")["registrationFees"] == []
    assert fees.remove_registration_fee("c2", fee_id) is False
    assert fees.remove_registration_fee("c1", "nope") is False
    assert fees.remove_registration_fee("c1", fee_id) is True
    assert fees.get_class_fees("c1")["registrationFees"] == []


def test_sync_class_names_from_roster(ctx, adapter):
    ctx.fees.set_class_monthly_fee("c1", "CP1", 30000)
    ctx.fees.set_class_monthly_fee("c2", "CE1", 30000)
    adapter.save("classes", {"id": "c1", "name": "CP1 A"})
    adapter.save("classes", {"id": "c2", "name": "CE1"})
    adapter.save("classes", {"id": "c3", "name": "CM2"})
    assert ctx.fees.sync_class_names(ctx.roster) == 1
    assert ctx.fees.get_class_fees("c1")["className"] == "CP1 A"
    assert ctx.fees.get_class_fees("c3") is None
    assert ctx.fees.rename_class("c3", "CM2") is False

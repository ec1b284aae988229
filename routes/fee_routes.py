from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from utils.errors import NotFound

fee_bp = Blueprint("fees", __name__, url_prefix="/fees")


def _ctx():
    return current_app.extensions["fee_context"]


def _payload() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object body")
    return data


@fee_bp.get("/services")
def list_services():
    return jsonify(_ctx().fees.list_services())


@fee_bp.post("/services")
def add_service():
    fees = _ctx().fees
    service_id = fees.add_service(_payload())
    return jsonify(fees.get_service(service_id)), 201


@fee_bp.patch("/services/<service_id>")
def update_service(service_id: str):
    service = _ctx().fees.update_service(service_id, _payload())
    if service is None:
        raise NotFound(f"service {service_id} not found")
    return jsonify(service)


@fee_bp.delete("/services/<service_id>")
def delete_service(service_id: str):
    if not _ctx().fees.delete_service(service_id):
        raise NotFound(f"service {service_id} not found")
    return jsonify({"ok": True})


@fee_bp.get("/classes")
def list_class_fees():
    return jsonify(_ctx().fees.list_class_fees())


@fee_bp.get("/classes/<class_id>")
def get_class_fees(class_id: str):
    config = _ctx().fees.get_class_fees(class_id)
    if config is None:
        raise NotFound(f"no fee configuration for class {class_id}")
    return jsonify(config)


@fee_bp.put("/classes/<class_id>/monthly")
def set_monthly_fee(class_id: str):
    data = _payload()
    class_name = (data.get("className") or "").strip()
    if not class_name:
        raise ValueError("className is required")
    config = _ctx().fees.set_class_monthly_fee(class_id, class_name, data.get("monthlyFee"))
    return jsonify(config)


@fee_bp.post("/classes/<class_id>/registration")
def add_registration_fee(class_id: str):
    fees = _ctx().fees
    fee_id = fees.add_registration_fee(class_id, _payload())
    if fee_id is None:
        raise NotFound(f"set a monthly fee for class {class_id} first")
    return jsonify({"id": fee_id, "classFees": fees.get_class_fees(class_id)}), 201


@fee_bp.delete("/classes/<class_id>/registration/<fee_id>")
def remove_registration_fee(class_id: str, fee_id: str):
    if not _ctx().fees.remove_registration_fee(class_id, fee_id):
        raise NotFound(f"registration fee {fee_id} not found for class {class_id}")
    return jsonify({"ok": True})


@fee_bp.post("/classes/sync-names")
def sync_class_names():
    ctx = _ctx()
    changed = ctx.fees.sync_class_names(ctx.roster)
    current_app.logger.info("Class name sync updated %d fee configs", changed)
    return jsonify({"ok": True, "updated": changed})

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from utils.errors import NotFound
from utils.formatting import format_amount, month_label, month_options
from utils.records import parse_month
from utils.timezone_helpers import payment_date_label, west_africa_now

payment_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _ctx():
    return current_app.extensions["fee_context"]


def _payload() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object body")
    return data


def _found(payment, payment_id: str):
    if payment is None:
        raise NotFound(f"payment {payment_id} not found")
    return jsonify(payment)


@payment_bp.get("/<class_id>/<month>")
def month_view(class_id: str, month: str):
    """All payment records of a class for one month, created on first view."""
    parse_month(month)
    ctx = _ctx()
    payments = ctx.ledger.materialize_month(class_id, month, ctx.roster)
    summary = ctx.ledger.month_summary(class_id, month)
    currency = current_app.config.get("CURRENCY_LABEL", "FCFA")
    return jsonify(
        {
            "classId": class_id,
            "month": month,
            "label": month_label(month),
            "months": month_options(west_africa_now().date()),
            "classFees": ctx.ledger.get_class_fees(class_id),
            "payments": payments,
            "summary": summary,
            "display": {
                "totalAmount": format_amount(summary["totalAmount"], currency),
                "paidAmount": format_amount(summary["paidAmount"], currency),
                "remainingAmount": format_amount(summary["remainingAmount"], currency),
                "paymentDates": {p["id"]: payment_date_label(p["paymentDate"]) for p in payments},
            },
        }
    )


@payment_bp.get("/<class_id>/<month>/summary")
def month_summary(class_id: str, month: str):
    parse_month(month)
    return jsonify(_ctx().ledger.month_summary(class_id, month))


@payment_bp.get("/record/<payment_id>")
def get_payment(payment_id: str):
    return _found(_ctx().ledger.get_payment(payment_id), payment_id)


@payment_bp.patch("/record/<payment_id>")
def update_payment(payment_id: str):
    return _found(_ctx().ledger.update_student_payment(payment_id, _payload()), payment_id)


@payment_bp.post("/record/<payment_id>/services")
def add_service(payment_id: str):
    ctx = _ctx()
    service_id = str(_payload().get("serviceId") or "")
    if ctx.fees.get_service(service_id) is None:
        raise NotFound(f"service {service_id} not found")
    return _found(ctx.ledger.add_service_to_payment(payment_id, service_id), payment_id)


@payment_bp.delete("/record/<payment_id>/services/<service_id>")
def remove_service(payment_id: str, service_id: str):
    return _found(_ctx().ledger.remove_service_from_payment(payment_id, service_id), payment_id)


@payment_bp.post("/record/<payment_id>/fees")
def add_fee(payment_id: str):
    data = _payload()
    return _found(_ctx().ledger.add_additional_fee(payment_id, data.get("name"), data.get("amount")), payment_id)


@payment_bp.delete("/record/<payment_id>/fees/<fee_id>")
def remove_fee(payment_id: str, fee_id: str):
    return _found(_ctx().ledger.remove_additional_fee(payment_id, fee_id), payment_id)


@payment_bp.post("/record/<payment_id>/pay")
def record_payment(payment_id: str):
    payment = _ctx().ledger.record_payment(payment_id, _payload().get("amount"))
    if payment is not None:
        current_app.logger.info("Recorded payment on %s; remaining %s", payment_id, payment["remainingAmount"])
    return _found(payment, payment_id)

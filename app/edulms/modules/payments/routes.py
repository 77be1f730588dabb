from __future__ import annotations

import hmac

from flask import Blueprint, current_app, g, jsonify, request

from app.edulms.constants import ROLE_STUDENT
from app.edulms.db import db_session
from app.edulms.errors import NotAuthorized, ValidationFailed
from app.edulms.models import User
from app.edulms.modules.payments.models import FeeStructure, Payment, PaymentCallbackLog
from app.edulms.modules.payments.service import (
    PaymentNotFound,
    assign_fee_structure,
    bulk_manual_verify,
    create_fee_structure,
    deactivate_fee_structure,
    handle_external_callback,
    initiate_payment,
    manual_verify,
    outstanding_balance,
    payments_for_student,
    reconcile_pending,
    review_queue,
)
from app.edulms.rbac import require_permission, user_has_permission
from app.edulms.utils import money, parse_iso_date, to_int

bp = Blueprint("payments", __name__)

# What the gateway expects back; anything else makes it retry.
CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def payment_to_dict(p: Payment, *, with_notes: bool = False) -> dict:
    d = {
        "id": p.id,
        "reference": p.reference,
        "student_id": p.student_id,
        "fee_structure_id": p.fee_structure_id,
        "amount": money(p.amount),
        "method": p.method,
        "status": p.status,
        "correlation_ref": p.correlation_ref,
        "dispatch_status": p.dispatch_status,
        "dispatch_error": p.dispatch_error,
        "external_receipt": p.external_receipt,
        "confirmed_at": p.confirmed_at.isoformat() if p.confirmed_at else None,
        "failure_reason": p.failure_reason,
        "needs_review": p.needs_review,
        "review_reason": p.review_reason,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }
    if with_notes:
        d["notes"] = [
            {
                "action": n.action,
                "by": n.actor_label,
                "from": n.from_status,
                "to": n.to_status,
                "notes": n.notes,
                "at": n.created_at.isoformat() if n.created_at else None,
            }
            for n in p.notes
        ]
    return d


def fee_to_dict(f: FeeStructure) -> dict:
    return {
        "id": f.id,
        "name": f.name,
        "fee_type": f.fee_type,
        "amount": money(f.amount),
        "valid_from": f.valid_from.isoformat() if f.valid_from else None,
        "valid_to": f.valid_to.isoformat() if f.valid_to else None,
        "is_active": f.is_active,
    }


def callback_log_to_dict(c: PaymentCallbackLog) -> dict:
    return {
        "id": c.id,
        "correlation_ref": c.correlation_ref,
        "outcome": c.outcome,
        "amount": money(c.amount),
        "external_receipt": c.external_receipt,
        "result": c.result,
        "detail": c.detail,
        "payment_id": c.payment_id,
        "received_at": c.received_at.isoformat() if c.received_at else None,
    }


def _can_view_student(u: User, student_id: int) -> bool:
    if user_has_permission(u, "payments.view_all"):
        return True
    return u.role == ROLE_STUDENT and u.id == student_id


# ---------- Fee structures ----------
@bp.post("/fee-structures")
@require_permission("fees.manage")
def fee_structures_create():
    s = db_session()
    u = _current_user()
    payload = _payload()
    try:
        valid_from = parse_iso_date(payload.get("valid_from"))
        valid_to = parse_iso_date(payload.get("valid_to"))
    except ValueError as e:
        raise ValidationFailed(str(e)) from e
    fee = create_fee_structure(
        s,
        name=payload.get("name") or "",
        fee_type=(payload.get("fee_type") or "").strip(),
        amount=payload.get("amount"),
        valid_from=valid_from,
        valid_to=valid_to,
        description=payload.get("description"),
        user=u,
    )
    s.commit()
    return jsonify(fee_to_dict(fee)), 201


@bp.post("/fee-structures/<int:fee_structure_id>/deactivate")
@require_permission("fees.manage")
def fee_structures_deactivate(fee_structure_id: int):
    s = db_session()
    fee = deactivate_fee_structure(s, fee_structure_id, user=_current_user())
    s.commit()
    return jsonify(fee_to_dict(fee))


@bp.post("/fee-structures/<int:fee_structure_id>/assign")
@require_permission("fees.manage")
def fee_structures_assign(fee_structure_id: int):
    s = db_session()
    payload = _payload()
    ids = payload.get("student_ids") or []
    if not isinstance(ids, list) or not ids:
        raise ValidationFailed("student_ids must be a non-empty list.")
    outcome = assign_fee_structure(
        s,
        fee_structure_id,
        ids,
        academic_year=payload.get("academic_year"),
        semester=payload.get("semester"),
        user=_current_user(),
    )
    s.commit()
    return jsonify(outcome.to_dict())


# ---------- Payments ----------
@bp.post("/payments")
@require_permission("payments.initiate")
def payments_initiate():
    s = db_session()
    u = _current_user()
    payload = _payload()

    if u.role == ROLE_STUDENT:
        student = u
    else:
        student_id = to_int(payload.get("student_id"))
        student = s.get(User, student_id) if student_id is not None else None
        if not student or student.role != ROLE_STUDENT:
            raise ValidationFailed("student_id must reference a student.")

    fee_structure_id = to_int(payload.get("fee_structure_id"))
    if fee_structure_id is None:
        raise ValidationFailed("fee_structure_id is required and must be an integer.")

    # initiate_payment commits the pending row itself before dispatching.
    payment = initiate_payment(
        s,
        student,
        fee_structure_id,
        payload.get("amount"),
        payload.get("method") or "",
        payer_reference=payload.get("payer_reference") or student.phone,
        gateway=current_app.extensions.get("payment_gateway"),
        actor=u,
    )
    return jsonify(payment_to_dict(payment)), 201


@bp.get("/payments/<int:payment_id>")
@require_permission("payments.view")
def payments_detail(payment_id: int):
    s = db_session()
    u = _current_user()
    payment = s.get(Payment, payment_id)
    if not payment:
        raise PaymentNotFound()
    if not _can_view_student(u, payment.student_id):
        raise NotAuthorized()
    return jsonify(payment_to_dict(payment, with_notes=True))


@bp.get("/students/<int:student_id>/payments")
@require_permission("payments.view")
def student_payments(student_id: int):
    s = db_session()
    u = _current_user()
    if not _can_view_student(u, student_id):
        raise NotAuthorized()
    return jsonify({"payments": [payment_to_dict(p) for p in payments_for_student(s, student_id)]})


@bp.get("/students/<int:student_id>/balance")
@require_permission("payments.view")
def student_balance(student_id: int):
    s = db_session()
    u = _current_user()
    if not _can_view_student(u, student_id):
        raise NotAuthorized()
    try:
        as_of = parse_iso_date(request.args.get("as_of"))
    except ValueError as e:
        raise ValidationFailed(str(e)) from e
    return jsonify(outstanding_balance(s, student_id, as_of=as_of).to_dict())


@bp.post("/payments/<int:payment_id>/verify")
@require_permission("payments.verify")
def payments_verify(payment_id: int):
    s = db_session()
    u = _current_user()
    payload = _payload()
    payment = manual_verify(s, payment_id, u, payload.get("decision") or "", payload.get("notes"))
    s.commit()
    return jsonify(payment_to_dict(payment, with_notes=True))


@bp.post("/payments/bulk-verify")
@require_permission("payments.verify")
def payments_bulk_verify():
    s = db_session()
    u = _current_user()
    payload = _payload()
    ids = payload.get("payment_ids") or []
    if not isinstance(ids, list) or not ids:
        raise ValidationFailed("payment_ids must be a non-empty list.")
    outcome = bulk_manual_verify(s, ids, u, payload.get("decision") or "", payload.get("notes"))
    s.commit()
    return jsonify(outcome.to_dict())


@bp.post("/payments/reconcile")
@require_permission("payments.reconcile")
def payments_reconcile():
    s = db_session()
    payload = _payload()
    raw_minutes = payload.get("older_than_minutes")
    if raw_minutes in (None, ""):
        minutes = int(current_app.config.get("PAYMENT_RECONCILE_AFTER_MINUTES") or 10)
    else:
        minutes = to_int(raw_minutes)
        if minutes is None or minutes < 0:
            raise ValidationFailed("older_than_minutes must be a non-negative integer.")
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is None:
        raise ValidationFailed("Payment gateway is not configured.")
    summary = reconcile_pending(s, gateway, older_than_minutes=minutes)
    s.commit()
    return jsonify(summary.to_dict())


@bp.get("/payments/review")
@require_permission("payments.verify")
def payments_review():
    s = db_session()
    queue = review_queue(s)
    return jsonify(
        {
            "payments": [payment_to_dict(p, with_notes=True) for p in queue.payments],
            "callbacks": [callback_log_to_dict(c) for c in queue.callbacks],
        }
    )


# ---------- Gateway callback ----------
def _callback_token_ok() -> bool:
    expected = current_app.config.get("PAYMENT_CALLBACK_TOKEN") or ""
    if not expected:
        # No shared secret configured: refuse everything rather than accept anything.
        return False
    supplied = request.headers.get("X-Callback-Token") or request.args.get("token") or ""
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


@bp.post("/payments/callback")
def payments_callback():
    """
    Inbound gateway confirmation. Once authenticated, always acknowledged: the
    gateway has no useful recovery for an error, so outcomes are recorded here.
    """
    if not _callback_token_ok():
        current_app.logger.warning("Rejected payment callback with bad token (ip=%s)", request.remote_addr)
        return jsonify({"ResultCode": 1, "ResultDesc": "Rejected"}), 403

    s = db_session()
    data = request.get_json(silent=True)
    try:
        result = handle_external_callback(s, data, correlation_ref=request.args.get("ref"))
        s.commit()
        current_app.logger.info(
            "Payment callback handled: result=%s payment_id=%s request_id=%s",
            result.result,
            result.payment_id,
            getattr(g, "request_id", None),
        )
    except Exception:
        # Payment stays pending; reconcile_pending or an officer picks it up.
        s.rollback()
        current_app.logger.exception("Payment callback crashed (request_id=%s)", getattr(g, "request_id", None))
    return jsonify(CALLBACK_ACK), 200

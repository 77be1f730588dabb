"""
Payment reconciliation service.

Three writers race for a pending payment: the gateway callback, the officer
(manual_verify) and the status-query sweep (reconcile_pending). All of them go
through _transition(), a guarded UPDATE ... WHERE status = 'pending', so exactly
one of them moves the payment and the rest observe a terminal row.
"""
from __future__ import annotations

import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.edulms.audit import record_event
from app.edulms.constants import (
    FEE_TYPES,
    GATEWAY_METHODS,
    NOTIFY_PAYMENT_FAILED,
    NOTIFY_PAYMENT_REVIEW,
    NOTIFY_PAYMENT_VERIFIED,
    PAYMENT_CANCELLED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_METHODS,
    PAYMENT_PENDING,
    PAYMENT_TERMINAL_STATUSES,
    ROLE_FINANCE_OFFICER,
    ROLE_STUDENT,
)
from app.edulms.errors import EngineError, NotFound, ReconciliationAnomaly, StateConflict, ValidationFailed
from app.edulms.ledger import guarded_update, lock_row
from app.edulms.models import User
from app.edulms.notifications import queue_notification
from app.edulms.utils import BulkOutcome, money, to_decimal, to_int, utcnow

from .gateway import GatewayError, GatewayTimeout, PaymentGateway
from .models import FeeStructure, Payment, PaymentCallbackLog, PaymentNote, StudentFeeAssignment
from .parsers import OUTCOME_SUCCESS, CallbackParseError, CallbackPayload, parse_callback

logger = logging.getLogger(__name__)

ACTOR_GATEWAY = "gateway"
ACTOR_SYSTEM = "system"

# Officer decisions accept either the verb or the resulting status.
DECISIONS: dict[str, str] = {
    "approve": PAYMENT_COMPLETED,
    "completed": PAYMENT_COMPLETED,
    "reject": PAYMENT_FAILED,
    "failed": PAYMENT_FAILED,
    "cancel": PAYMENT_CANCELLED,
    "cancelled": PAYMENT_CANCELLED,
}

CALLBACK_APPLIED = "applied"
CALLBACK_DUPLICATE = "duplicate"
CALLBACK_NOT_FOUND = "not_found"
CALLBACK_MISMATCH = "mismatch"
CALLBACK_INVALID = "invalid"
CALLBACK_NEEDS_ATTENTION = (CALLBACK_NOT_FOUND, CALLBACK_MISMATCH, CALLBACK_INVALID)


class FeeStructureNotFound(NotFound):
    code = "fee_structure_not_found"
    default_message = "Fee structure not found."


class FeeStructureInactive(StateConflict):
    code = "fee_structure_inactive"
    default_message = "Fee structure is not currently applicable."


class FeeNotAssigned(StateConflict):
    code = "fee_not_assigned"
    default_message = "Fee structure is not assigned to this student."


class InvalidFeeStructure(ValidationFailed):
    code = "invalid_fee_structure"


class InvalidAmount(ValidationFailed):
    code = "invalid_amount"
    default_message = "Amount must be a positive number."


class InvalidPaymentMethod(ValidationFailed):
    code = "invalid_payment_method"


class InvalidPayerReference(ValidationFailed):
    code = "invalid_payer_reference"
    default_message = "A payer phone number is required for gateway payments."


class PaymentNotFound(NotFound):
    code = "payment_not_found"
    default_message = "Payment not found."


class PaymentAlreadyTerminal(StateConflict):
    code = "already_terminal"
    default_message = "Payment has already been finalized."


class InvalidDecision(ValidationFailed):
    code = "invalid_decision"


class ReconciliationMismatch(ReconciliationAnomaly):
    code = "reconciliation_mismatch"
    default_message = "Reported amount does not match the pending payment; routed to review."


@dataclass(frozen=True)
class CallbackResult:
    result: str
    payment_id: int | None = None
    code: str | None = None
    message: str | None = None

    @property
    def applied(self) -> bool:
        return self.result == CALLBACK_APPLIED


@dataclass
class BalanceStatement:
    student_id: int
    as_of: date
    total_fees: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    pending_amount: Decimal = Decimal("0")
    fees: list[dict[str, Any]] = field(default_factory=list)

    @property
    def outstanding(self) -> Decimal:
        return max(self.total_fees - self.total_paid, Decimal("0"))

    @property
    def credit(self) -> Decimal:
        return max(self.total_paid - self.total_fees, Decimal("0"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "as_of": self.as_of.isoformat(),
            "total_fees": money(self.total_fees),
            "total_paid": money(self.total_paid),
            "pending_amount": money(self.pending_amount),
            "outstanding": money(self.outstanding),
            "credit": money(self.credit),
            "fees": self.fees,
        }


@dataclass
class ReconcileSummary:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "failed": self.failed,
            "still_pending": self.still_pending,
            "errors": {str(k): v for k, v in self.errors.items()},
        }


@dataclass
class ReviewQueue:
    payments: list[Payment] = field(default_factory=list)
    callbacks: list[PaymentCallbackLog] = field(default_factory=list)


# ---------- Fee structures ----------
def create_fee_structure(
    s: Session,
    *,
    name: str,
    fee_type: str,
    amount,
    valid_from: date,
    valid_to: date | None = None,
    description: str | None = None,
    user: User | None = None,
) -> FeeStructure:
    errors = []
    if not (name or "").strip():
        errors.append("Name is required.")
    if fee_type not in FEE_TYPES:
        errors.append(f"Invalid fee type: {fee_type}")
    amt = to_decimal(amount)
    if amt is None or amt <= 0:
        errors.append("Amount must be positive.")
    if valid_from is None:
        errors.append("valid_from is required.")
    elif valid_to is not None and valid_to < valid_from:
        errors.append("valid_to cannot be before valid_from.")
    if errors:
        raise InvalidFeeStructure("; ".join(errors), errors=errors)

    now = utcnow()
    fee = FeeStructure(
        name=name.strip(),
        fee_type=fee_type,
        amount=amt,
        description=(description or "").strip() or None,
        valid_from=valid_from,
        valid_to=valid_to,
        is_active=True,
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    s.add(fee)
    s.flush()
    record_event(
        s,
        actor=user,
        action="fee_structure.create",
        entity_type="FeeStructure",
        entity_id=str(fee.id),
        metadata={"name": fee.name, "fee_type": fee.fee_type, "amount": fee.amount},
    )
    return fee


def deactivate_fee_structure(s: Session, fee_structure_id: int, *, user: User | None = None) -> FeeStructure:
    fee = s.get(FeeStructure, fee_structure_id)
    if fee is None:
        raise FeeStructureNotFound()
    if fee.is_active:
        fee.is_active = False
        fee.updated_at = utcnow()
        record_event(
            s,
            actor=user,
            action="fee_structure.deactivate",
            entity_type="FeeStructure",
            entity_id=str(fee.id),
        )
    return fee



def assign_fee_structure(
    s: Session,
    fee_structure_id: int,
    student_ids: list,
    *,
    academic_year: str | None = None,
    semester: str | None = None,
    user: User | None = None,
) -> BulkOutcome:
    """
    Charge a fee structure to each listed student. The amount is copied onto the
    assignment, so what a student owes never changes when the structure is edited
    or its validity window ends. Students already charged are tallied, not re-charged.
    """
    fee = s.get(FeeStructure, fee_structure_id)
    if fee is None:
        raise FeeStructureNotFound()
    if not fee.is_active:
        raise FeeStructureInactive("Inactive fee structures cannot be assigned.")

    outcome = BulkOutcome()
    for raw_id in student_ids:
        student_id = to_int(raw_id)
        if student_id is None:
            outcome.failed[str(raw_id)] = "invalid_id"
            continue
        student = s.get(User, student_id)
        if student is None or student.role != ROLE_STUDENT:
            outcome.failed[student_id] = "student_not_found"
            continue
        if _assignment_for(s, student_id, fee.id) is not None:
            outcome.failed[student_id] = "already_assigned"
            continue
        try:
            with s.begin_nested():
                s.add(
                    StudentFeeAssignment(
                        student_id=student_id,
                        fee_structure_id=fee.id,
                        amount=fee.amount,
                        academic_year=(academic_year or "").strip() or None,
                        semester=(semester or "").strip() or None,
                        assigned_by_user_id=user.id if user else None,
                        created_at=utcnow(),
                    )
                )
                s.flush()
        except IntegrityError:
            outcome.failed[student_id] = "already_assigned"
            continue
        outcome.succeeded.append(student_id)

    record_event(
        s,
        actor=user,
        action="fee_structure.assign",
        entity_type="FeeStructure",
        entity_id=str(fee.id),
        metadata={"amount": fee.amount, "academic_year": academic_year, "semester": semester, **outcome.to_dict()},
    )
    return outcome


def _assignment_for(s: Session, student_id: int, fee_structure_id: int) -> StudentFeeAssignment | None:
    return s.execute(
        select(StudentFeeAssignment).where(
            StudentFeeAssignment.student_id == student_id,
            StudentFeeAssignment.fee_structure_id == fee_structure_id,
        )
    ).scalar_one_or_none()

# ---------- Helpers ----------
def generate_reference(today: date | None = None) -> str:
    day = today or utcnow().date()
    return f"PAY-{day:%Y%m%d}-{secrets.token_hex(3).upper()}"


def _add_note(
    s: Session,
    payment: Payment,
    *,
    action: str,
    actor: User | None = None,
    actor_label: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    notes: str | None = None,
) -> PaymentNote:
    note = PaymentNote(
        payment=payment,
        actor_user_id=actor.id if actor else None,
        actor_label=actor.email if actor else (actor_label or ACTOR_SYSTEM),
        action=action,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        created_at=utcnow(),
    )
    s.add(note)
    return note


def _transition(
    s: Session,
    payment: Payment,
    to_status: str,
    *,
    values: dict[str, Any] | None = None,
    action: str,
    actor: User | None = None,
    actor_label: str | None = None,
    notes: str | None = None,
) -> bool:
    """
    pending -> to_status, only if the row is still pending. Returns True if this
    call made the move; on True the note and notification are written exactly once.
    """
    now = utcnow()
    won = guarded_update(
        s,
        Payment,
        payment.id,
        expected={"status": PAYMENT_PENDING},
        values={"status": to_status, "updated_at": now, **(values or {})},
    )
    s.refresh(payment)
    if not won:
        return False

    _add_note(
        s,
        payment,
        action=action,
        actor=actor,
        actor_label=actor_label,
        from_status=PAYMENT_PENDING,
        to_status=to_status,
        notes=notes,
    )
    if to_status == PAYMENT_COMPLETED:
        queue_notification(
            s,
            payment.student_id,
            NOTIFY_PAYMENT_VERIFIED,
            {"payment_id": payment.id, "reference": payment.reference, "amount": money(payment.amount)},
        )
    elif to_status == PAYMENT_FAILED:
        queue_notification(
            s,
            payment.student_id,
            NOTIFY_PAYMENT_FAILED,
            {"payment_id": payment.id, "reference": payment.reference, "reason": payment.failure_reason},
        )
    record_event(
        s,
        actor=actor,
        action=f"payment.{action}",
        entity_type="Payment",
        entity_id=str(payment.id),
        reason=notes,
        metadata={"reference": payment.reference, "from": PAYMENT_PENDING, "to": to_status, "by": actor_label},
    )
    return True


def _notify_officers(s: Session, payment: Payment, reason: str) -> None:
    officer_ids = s.execute(
        select(User.id).where(User.role == ROLE_FINANCE_OFFICER, User.is_active.is_(True))
    ).scalars()
    for officer_id in officer_ids:
        queue_notification(
            s,
            officer_id,
            NOTIFY_PAYMENT_REVIEW,
            {"payment_id": payment.id, "reference": payment.reference, "reason": reason},
        )


# ---------- Initiation ----------
def initiate_payment(
    s: Session,
    student: User,
    fee_structure_id: int,
    amount,
    method: str,
    *,
    payer_reference: str | None = None,
    gateway: PaymentGateway | None = None,
    actor: User | None = None,
    today: date | None = None,
) -> Payment:
    """
    Create a pending payment and, for gateway methods, dispatch it.

    The pending row is committed before the gateway is called, so a slow or lost
    dispatch can never lose the fee obligation. Dispatch problems are recorded on
    the row (dispatch_status) and the payment stays pending for a later callback,
    the reconcile sweep, or an officer. The dispatch outcome is committed as well.
    """
    method = (method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        raise InvalidPaymentMethod(f"Invalid payment method: {method or '(empty)'}", allowed=sorted(PAYMENT_METHODS))

    amt = to_decimal(amount)
    if amt is None or amt <= 0:
        raise InvalidAmount()
    if amt != amt.quantize(Decimal("0.01")):
        raise InvalidAmount("Amount cannot have more than two decimal places.")
    is_gateway = method in GATEWAY_METHODS
    if is_gateway and amt != amt.to_integral_value():
        raise InvalidAmount("Gateway payments must be in whole currency units.")

    fee = s.get(FeeStructure, fee_structure_id)
    if fee is None:
        raise FeeStructureNotFound()
    if not fee.applies_on(today or utcnow().date()):
        raise FeeStructureInactive()
    if _assignment_for(s, student.id, fee.id) is None:
        raise FeeNotAssigned()

    payer_reference = (payer_reference or "").strip() or None
    if is_gateway and not payer_reference:
        raise InvalidPayerReference()

    now = utcnow()
    payment = None
    for _ in range(3):
        candidate = Payment(
            reference=generate_reference(now.date()),
            student_id=student.id,
            fee_structure_id=fee.id,
            amount=amt,
            method=method,
            status=PAYMENT_PENDING,
            correlation_ref=uuid.uuid4().hex if is_gateway else None,
            payer_reference=payer_reference,
            dispatch_status="not_dispatched",
            created_at=now,
            updated_at=now,
        )
        try:
            with s.begin_nested():
                s.add(candidate)
                s.flush()
            payment = candidate
            break
        except IntegrityError:
            logger.warning("Payment reference collision; regenerating")
    if payment is None:
        raise StateConflict("Could not allocate a unique payment reference.")

    _add_note(s, payment, action="initiated", actor=actor or student, to_status=PAYMENT_PENDING)
    record_event(
        s,
        actor=actor or student,
        action="payment.initiate",
        entity_type="Payment",
        entity_id=str(payment.id),
        metadata={"reference": payment.reference, "amount": amt, "method": method, "fee_structure_id": fee.id},
    )
    s.commit()

    if not is_gateway:
        return payment

    _dispatch(s, payment, fee, gateway)
    s.commit()
    return payment


def _dispatch(s: Session, payment: Payment, fee: FeeStructure, gateway: PaymentGateway | None) -> None:
    if gateway is None:
        status, error, request_id = "not_dispatched", "Payment gateway not configured", None
        logger.warning("Payment %s left pending: gateway not configured", payment.reference)
    else:
        try:
            result = gateway.dispatch(
                correlation_ref=payment.correlation_ref or "",
                payer_reference=payment.payer_reference or "",
                amount=payment.amount,
                account_reference=payment.reference.replace("PAY-", ""),
                description=fee.name,
            )
        except GatewayTimeout as e:
            status, error, request_id = "timeout", str(e), None
            logger.warning("Gateway dispatch timed out for %s: %s", payment.reference, e)
        except GatewayError as e:
            status, error, request_id = "error", str(e), None
            logger.error("Gateway dispatch failed for %s: %s", payment.reference, e)
        else:
            if result.accepted:
                status, error, request_id = "accepted", None, result.gateway_request_id
                logger.info("Gateway accepted %s (request_id=%s)", payment.reference, request_id)
            else:
                status, error, request_id = "rejected", result.message, None
                logger.warning("Gateway rejected %s: %s", payment.reference, result.message)

    # Only dispatch fields are written here; status belongs to _transition().
    s.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(
            dispatch_status=status,
            dispatch_error=error[:1000] if error else None,
            gateway_request_id=request_id,
            dispatched_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    s.refresh(payment)
    _add_note(s, payment, action=f"dispatch_{status}", actor_label=ACTOR_SYSTEM, notes=error)


# ---------- Callback ----------
def _find_payment_for_callback(s: Session, payload: CallbackPayload) -> Payment | None:
    clauses = []
    if payload.correlation_ref:
        clauses.append(Payment.correlation_ref == payload.correlation_ref)
    if payload.gateway_request_id:
        clauses.append(Payment.gateway_request_id == payload.gateway_request_id)
    if not clauses:
        return None
    found = s.execute(select(Payment.id).where(or_(*clauses)).order_by(Payment.id)).scalars().first()
    if found is None:
        return None
    return lock_row(s, Payment, found)


def handle_external_callback(s: Session, data: Any, *, correlation_ref: str | None = None) -> CallbackResult:
    """
    Apply an inbound gateway callback. Never raises for domain outcomes: unknown
    references, duplicates and amount mismatches are logged and reported in the
    returned CallbackResult, because the gateway cannot act on an error anyway.
    """
    try:
        raw = json.dumps(data, default=str, sort_keys=True)[:20000]
    except (TypeError, ValueError):
        raw = repr(data)[:20000]

    log = PaymentCallbackLog(correlation_ref=correlation_ref, raw_payload=raw, result=CALLBACK_INVALID, received_at=utcnow())
    s.add(log)

    try:
        payload = parse_callback(data, correlation_ref=correlation_ref)
    except CallbackParseError as e:
        log.detail = str(e)
        s.flush()
        logger.warning("Invalid payment callback: %s", e)
        return CallbackResult(result=CALLBACK_INVALID, message=str(e))

    log.correlation_ref = payload.correlation_ref or payload.gateway_request_id
    log.outcome = payload.outcome
    log.amount = payload.amount
    log.external_receipt = payload.external_receipt

    payment = _find_payment_for_callback(s, payload)
    if payment is None:
        log.result = CALLBACK_NOT_FOUND
        log.detail = PaymentNotFound.default_message
        s.flush()
        logger.warning(
            "Payment callback for unknown reference (correlation_ref=%s request_id=%s)",
            payload.correlation_ref,
            payload.gateway_request_id,
        )
        return CallbackResult(result=CALLBACK_NOT_FOUND, code=PaymentNotFound.code, message=PaymentNotFound.default_message)

    log.payment_id = payment.id
    result = _apply_callback(s, payment, payload)
    log.result = result.result
    log.detail = result.message
    log.resolved = result.result in (CALLBACK_APPLIED, CALLBACK_DUPLICATE)
    s.flush()
    logger.info("Payment callback %s -> %s (payment_id=%s)", payload.correlation_ref or payload.gateway_request_id, result.result, payment.id)
    return result


def _apply_callback(s: Session, payment: Payment, payload: CallbackPayload) -> CallbackResult:
    if payment.status in PAYMENT_TERMINAL_STATUSES:
        return CallbackResult(
            result=CALLBACK_DUPLICATE,
            payment_id=payment.id,
            code=PaymentAlreadyTerminal.code,
            message=f"Payment already {payment.status}",
        )

    if payload.outcome == OUTCOME_SUCCESS:
        if payload.amount is None or payload.amount != payment.amount:
            reason = f"Callback amount {money(payload.amount) or '(missing)'} does not match expected {money(payment.amount)}"
            already_flagged = payment.needs_review
            flagged = guarded_update(
                s,
                Payment,
                payment.id,
                expected={"status": PAYMENT_PENDING},
                values={"needs_review": True, "review_reason": reason, "updated_at": utcnow()},
            )
            s.refresh(payment)
            if not flagged:
                return CallbackResult(result=CALLBACK_DUPLICATE, payment_id=payment.id, code=PaymentAlreadyTerminal.code)
            _add_note(
                s,
                payment,
                action="callback_mismatch",
                actor_label=ACTOR_GATEWAY,
                from_status=PAYMENT_PENDING,
                to_status=PAYMENT_PENDING,
                notes=f"{reason}; receipt {payload.external_receipt}",
            )
            if not already_flagged:
                _notify_officers(s, payment, reason)
            record_event(
                s,
                actor=None,
                action="payment.reconciliation_mismatch",
                entity_type="Payment",
                entity_id=str(payment.id),
                reason=reason,
                metadata={"reference": payment.reference, "receipt": payload.external_receipt},
            )
            logger.warning("Reconciliation mismatch on %s: %s", payment.reference, reason)
            return CallbackResult(
                result=CALLBACK_MISMATCH,
                payment_id=payment.id,
                code=ReconciliationMismatch.code,
                message=reason,
            )

        won = _transition(
            s,
            payment,
            PAYMENT_COMPLETED,
            values={
                "external_receipt": payload.external_receipt,
                "confirmed_at": utcnow(),
                "needs_review": False,
                "review_reason": None,
            },
            action="callback_completed",
            actor_label=ACTOR_GATEWAY,
            notes=f"Receipt {payload.external_receipt}",
        )
    else:
        reason = payload.result_desc or "Gateway reported failure"
        won = _transition(
            s,
            payment,
            PAYMENT_FAILED,
            values={"failure_reason": reason[:1000]},
            action="callback_failed",
            actor_label=ACTOR_GATEWAY,
            notes=reason,
        )

    if not won:
        return CallbackResult(result=CALLBACK_DUPLICATE, payment_id=payment.id, code=PaymentAlreadyTerminal.code)
    return CallbackResult(result=CALLBACK_APPLIED, payment_id=payment.id, message=f"Payment {payment.status}")


# ---------- Manual verification ----------
def _resolve_decision(decision: str) -> str:
    to_status = DECISIONS.get((decision or "").strip().lower())
    if to_status is None:
        raise InvalidDecision(f"Invalid decision: {decision or '(empty)'}", allowed=sorted(DECISIONS))
    return to_status


def manual_verify(s: Session, payment_id: int, officer: User, decision: str, notes: str | None = None) -> Payment:
    """
    Officer confirmation path for a pending payment. A terminal payment is never
    overridden here; corrections are a separate, explicit process.
    """
    to_status = _resolve_decision(decision)
    payment = lock_row(s, Payment, payment_id)
    if payment is None:
        raise PaymentNotFound()
    if payment.status in PAYMENT_TERMINAL_STATUSES:
        raise PaymentAlreadyTerminal(status=payment.status)

    now = utcnow()
    values: dict[str, Any] = {
        "verified_by_user_id": officer.id,
        "verified_at": now,
        "needs_review": False,
        "review_reason": None,
    }
    if to_status == PAYMENT_COMPLETED:
        values["confirmed_at"] = now
    elif notes:
        values["failure_reason"] = notes[:1000]

    if not _transition(s, payment, to_status, values=values, action=f"manual_{to_status}", actor=officer, notes=notes):
        raise PaymentAlreadyTerminal(status=payment.status)

    s.execute(
        update(PaymentCallbackLog)
        .where(PaymentCallbackLog.payment_id == payment.id, PaymentCallbackLog.resolved.is_(False))
        .values(resolved=True)
        .execution_options(synchronize_session=False)
    )
    return payment


def bulk_manual_verify(
    s: Session,
    payment_ids: list,
    officer: User,
    decision: str,
    notes: str | None = None,
) -> BulkOutcome:
    """Per-item verification; one bad id is tallied and never blocks the rest."""
    _resolve_decision(decision)
    outcome = BulkOutcome()
    for raw_id in payment_ids:
        payment_id = to_int(raw_id)
        if payment_id is None:
            outcome.failed[str(raw_id)] = "invalid_id"
            continue
        try:
            with s.begin_nested():
                manual_verify(s, payment_id, officer, decision, notes)
            outcome.succeeded.append(payment_id)
        except EngineError as e:
            outcome.failed[payment_id] = e.code
    record_event(
        s,
        actor=officer,
        action="payment.bulk_verify",
        entity_type="Payment",
        metadata={"decision": decision, **outcome.to_dict()},
    )
    return outcome


# ---------- Balances ----------
def outstanding_balance(s: Session, student_id: int, *, as_of: date | None = None) -> BalanceStatement:
    """
    Derived at read time: fees assigned to the student minus completed payments.
    Pending payments are reported on their own and never reduce the balance.
    A fee's validity window gates new payments only; once assigned it is owed
    until paid, so as_of only dates the statement.
    """
    day = as_of or utcnow().date()
    statement = BalanceStatement(student_id=student_id, as_of=day)

    assignments = s.execute(
        select(StudentFeeAssignment)
        .where(StudentFeeAssignment.student_id == student_id)
        .order_by(StudentFeeAssignment.id)
    ).scalars()
    for a in assignments:
        statement.total_fees += Decimal(a.amount)
        statement.fees.append(
            {
                "id": a.fee_structure_id,
                "name": a.fee_structure.name,
                "fee_type": a.fee_structure.fee_type,
                "amount": money(a.amount),
                "academic_year": a.academic_year,
                "semester": a.semester,
            }
        )

    totals = dict(
        s.execute(
            select(Payment.status, func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.student_id == student_id, Payment.status.in_([PAYMENT_COMPLETED, PAYMENT_PENDING]))
            .group_by(Payment.status)
        ).all()
    )
    statement.total_paid = Decimal(str(totals.get(PAYMENT_COMPLETED, 0)))
    statement.pending_amount = Decimal(str(totals.get(PAYMENT_PENDING, 0)))
    return statement


# ---------- Reconciliation ----------
def reconcile_pending(
    s: Session,
    gateway: PaymentGateway,
    *,
    older_than_minutes: int,
    now: datetime | None = None,
    limit: int = 100,
) -> ReconcileSummary:
    """
    Ask the gateway about dispatched payments that have sat in pending longer than
    older_than_minutes, and apply any final answer through the same guarded path
    callbacks use. Each payment is handled in its own savepoint.
    """
    cutoff = (now or utcnow()) - timedelta(minutes=older_than_minutes)
    candidates = list(
        s.execute(
            select(Payment.id, Payment.gateway_request_id)
            .where(
                Payment.status == PAYMENT_PENDING,
                Payment.method.in_(sorted(GATEWAY_METHODS)),
                Payment.gateway_request_id.is_not(None),
                Payment.created_at <= cutoff,
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        ).all()
    )

    summary = ReconcileSummary()
    for payment_id, request_id in candidates:
        summary.checked += 1
        try:
            status = gateway.query_status(request_id)
        except GatewayError as e:
            summary.errors[payment_id] = str(e)
            logger.warning("Status query failed for payment_id=%s: %s", payment_id, e)
            continue

        if status.outcome is None:
            summary.still_pending += 1
            continue

        with s.begin_nested():
            payment = lock_row(s, Payment, payment_id)
            if payment is None or payment.status != PAYMENT_PENDING:
                continue
            if status.outcome == OUTCOME_SUCCESS:
                moved = _transition(
                    s,
                    payment,
                    PAYMENT_COMPLETED,
                    values={"confirmed_at": utcnow()},
                    action="reconciled_completed",
                    actor_label=ACTOR_SYSTEM,
                    notes=status.message or "Confirmed by status query",
                )
                summary.completed += int(moved)
            else:
                reason = status.message or f"Gateway result code {status.result_code}"
                moved = _transition(
                    s,
                    payment,
                    PAYMENT_FAILED,
                    values={"failure_reason": reason[:1000]},
                    action="reconciled_failed",
                    actor_label=ACTOR_SYSTEM,
                    notes=reason,
                )
                summary.failed += int(moved)

    logger.info("Reconcile sweep: %s", summary.to_dict())
    return summary


def review_queue(s: Session) -> ReviewQueue:
    payments = list(
        s.execute(
            select(Payment)
            .where(Payment.status == PAYMENT_PENDING, Payment.needs_review.is_(True))
            .order_by(Payment.updated_at.asc())
        ).scalars()
    )
    callbacks = list(
        s.execute(
            select(PaymentCallbackLog)
            .where(PaymentCallbackLog.resolved.is_(False), PaymentCallbackLog.result.in_(CALLBACK_NEEDS_ATTENTION))
            .order_by(PaymentCallbackLog.received_at.asc())
        ).scalars()
    )
    return ReviewQueue(payments=payments, callbacks=callbacks)


def payments_for_student(s: Session, student_id: int) -> list[Payment]:
    return list(
        s.execute(select(Payment).where(Payment.student_id == student_id).order_by(Payment.created_at.desc(), Payment.id.desc())).scalars()
    )

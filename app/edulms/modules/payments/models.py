from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edulms.models import Base, User
from app.edulms.utils import utcnow


class FeeStructure(Base):
    __tablename__ = "fee_structures"
    __table_args__ = (Index("idx_fee_structures_active", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    fee_type: Mapped[str] = mapped_column(String(32), nullable=False, default="tuition")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[date | None] = mapped_column(Date, nullable=True)  # open-ended when NULL
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def applies_on(self, day: date) -> bool:
        if not self.is_active or day < self.valid_from:
            return False
        return self.valid_to is None or day <= self.valid_to


class StudentFeeAssignment(Base):
    """
    A fee structure charged to one student. amount is copied from the structure
    when assigned and never rewritten, so the obligation outlives the structure's
    validity window and later edits to it.
    """

    __tablename__ = "student_fee_assignments"
    __table_args__ = (
        UniqueConstraint("student_id", "fee_structure_id", name="uq_student_fee_assignments_student_fee"),
        Index("idx_student_fee_assignments_student", "student_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    fee_structure_id: Mapped[int] = mapped_column(ForeignKey("fee_structures.id", ondelete="RESTRICT"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    academic_year: Mapped[str | None] = mapped_column(String(16), nullable=True)
    semester: Mapped[str | None] = mapped_column(String(16), nullable=True)

    assigned_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    fee_structure: Mapped[FeeStructure] = relationship("FeeStructure", lazy="selectin")


class Payment(Base):
    """
    A fee obligation being settled. status leaves pending exactly once, and only
    through the guarded transitions in payments.service.
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_student_status", "student_id", "status"),
        Index("idx_payments_status_created", "status", "created_at"),
        Index("idx_payments_gateway_request", "gateway_request_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # PAY-YYYYMMDD-XXXXXX

    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    fee_structure_id: Mapped[int] = mapped_column(ForeignKey("fee_structures.id", ondelete="RESTRICT"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    # Gateway correlation. correlation_ref is assigned by us before dispatch and echoed back.
    correlation_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    gateway_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payer_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. payer phone
    dispatch_status: Mapped[str] = mapped_column(String(32), nullable=False, default="not_dispatched")
    dispatch_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    external_receipt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    verified_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    student: Mapped[User] = relationship("User", foreign_keys=[student_id], lazy="selectin")
    fee_structure: Mapped[FeeStructure] = relationship("FeeStructure", lazy="selectin")
    notes: Mapped[list["PaymentNote"]] = relationship(
        "PaymentNote",
        back_populates="payment",
        order_by="PaymentNote.id",
        lazy="selectin",
    )


class PaymentNote(Base):
    """Append-only reconciliation trail: who moved a payment, when, and why."""

    __tablename__ = "payment_notes"
    __table_args__ = (Index("idx_payment_notes_payment", "payment_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id", ondelete="CASCADE"), nullable=False)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_label: Mapped[str] = mapped_column(String(255), nullable=False)  # email, "gateway" or "system"
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    payment: Mapped[Payment] = relationship("Payment", back_populates="notes")


class PaymentCallbackLog(Base):
    """Every inbound gateway callback, as received, with what we did with it."""

    __tablename__ = "payment_callback_logs"
    __table_args__ = (
        Index("idx_payment_callback_logs_correlation", "correlation_ref"),
        Index("idx_payment_callback_logs_result", "result"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    correlation_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(16), nullable=True)  # success, failure
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    external_receipt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result: Mapped[str] = mapped_column(String(16), nullable=False)  # applied, duplicate, not_found, mismatch, invalid
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

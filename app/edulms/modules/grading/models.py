from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edulms.models import Base, User
from app.edulms.modules.assignments.models import Submission
from app.edulms.utils import utcnow


class Grade(Base):
    __tablename__ = "grades"
    __table_args__ = (
        Index("idx_grades_assignment", "assignment_id"),
        Index("idx_grades_student", "student_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Unique: the upsert in grade_submission relies on it.
    submission_id: Mapped[int] = mapped_column(
        ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    assignment_id: Mapped[int] = mapped_column(ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    grader_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    points_earned: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    max_points: Mapped[int] = mapped_column(Integer, nullable=False)  # snapshot at grading time
    letter_grade: Mapped[str] = mapped_column(String(4), nullable=False)
    grade_points: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    graded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    submission: Mapped[Submission] = relationship("Submission", lazy="selectin")
    grader: Mapped[User | None] = relationship("User", foreign_keys=[grader_id], lazy="selectin")

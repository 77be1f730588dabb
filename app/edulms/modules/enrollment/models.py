from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edulms.models import Base, User
from app.edulms.utils import utcnow


class Course(Base):
    __tablename__ = "courses"
    __table_args__ = (
        Index("idx_courses_status", "status"),
        Index("idx_courses_instructor", "instructor_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    course_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # e.g. "CS101"
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str | None] = mapped_column(String(128), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    instructor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Capacity: current_students is written only by the enrollment service.
    max_students: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    current_students: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active, inactive, pending, completed

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    instructor: Mapped[User | None] = relationship("User", lazy="selectin")


class Enrollment(Base):
    """One student in one course. Soft lifecycle only; rows are never deleted."""

    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="uq_enrollments_student_course"),
        Index("idx_enrollments_course_status", "course_id", "status"),
        Index("idx_enrollments_student_status", "student_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="RESTRICT"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active, inactive, completed, dropped

    # Set only on the transition to completed.
    final_grade: Mapped[str | None] = mapped_column(String(4), nullable=True)
    grade_points: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    course: Mapped["Course"] = relationship("Course", lazy="selectin")
    student: Mapped[User] = relationship("User", lazy="selectin")

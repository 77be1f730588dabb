from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edulms.constants import DEFAULT_MAX_FILE_SIZE
from app.edulms.models import Base, User
from app.edulms.modules.enrollment.models import Course
from app.edulms.utils import utcnow


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        Index("idx_assignments_course_status", "course_id", "status"),
        Index("idx_assignments_due_date", "due_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    max_points: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    submission_type: Mapped[str] = mapped_column(String(16), nullable=False, default="both")  # text, file, both
    max_file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_FILE_SIZE)
    allowed_extensions: Mapped[str | None] = mapped_column(String(255), nullable=True)  # comma-separated, e.g. "pdf,docx"

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")  # draft, published, closed
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    course: Mapped[Course] = relationship("Course", lazy="selectin")
    created_by: Mapped[User | None] = relationship("User", lazy="selectin")

    def allowed_extension_set(self) -> set[str]:
        if not self.allowed_extensions:
            return set()
        return {e.strip().lower().lstrip(".") for e in self.allowed_extensions.split(",") if e.strip()}


class Submission(Base):
    """The single live submission of one student for one assignment."""

    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("assignment_id", "student_id", name="uq_submissions_assignment_student"),
        Index("idx_submissions_student", "student_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    assignment_id: Mapped[int] = mapped_column(ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    submission_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Opaque storage key; bytes live in the external file store.
    file_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="submitted")  # submitted, late, graded
    is_late: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resubmission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    assignment: Mapped[Assignment] = relationship("Assignment", lazy="selectin")
    student: Mapped[User] = relationship("User", lazy="selectin")

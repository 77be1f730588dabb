"""
Grading service layer.

Scores are converted to a 4.0 scale through a fixed percentage banding table.
Percentages are computed in Decimal and banded unrounded, so 89.995% is an A-.
Rounding happens only where a value is shown or stored.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.edulms.audit import record_event
from app.edulms.constants import ENROLLMENT_COMPLETED, NOTIFY_SUBMISSION_GRADED, SUBMISSION_GRADED
from app.edulms.errors import NotAuthorized, NotFound, StateConflict, ValidationFailed
from app.edulms.ledger import lock_row
from app.edulms.models import User
from app.edulms.modules.assignments.models import Assignment, Submission
from app.edulms.modules.enrollment.models import Course, Enrollment
from app.edulms.modules.enrollment.service import CourseNotFound, EnrollmentNotFound, owns_course, update_status
from app.edulms.notifications import queue_notification
from app.edulms.utils import to_decimal, utcnow

from .models import Grade

# (minimum percentage, letter, grade points), highest first.
GRADE_BANDS: tuple[tuple[int, str, float], ...] = (
    (90, "A", 4.0),
    (85, "A-", 3.7),
    (80, "B+", 3.3),
    (75, "B", 3.0),
    (70, "B-", 2.7),
    (65, "C+", 2.3),
    (60, "C", 2.0),
    (55, "C-", 1.7),
    (50, "D+", 1.3),
    (45, "D", 1.0),
)
FAILING_BAND: tuple[str, float] = ("F", 0.0)
LETTER_GRADES = frozenset([letter for _, letter, _ in GRADE_BANDS] + [FAILING_BAND[0]])

TWO_PLACES = Decimal("0.01")


class SubmissionNotFound(NotFound):
    code = "submission_not_found"
    default_message = "Submission not found."


class PointsOutOfRange(ValidationFailed):
    code = "points_out_of_range"


class InvalidPoints(ValidationFailed):
    code = "invalid_points"


class InvalidLetterGrade(ValidationFailed):
    code = "invalid_letter_grade"


class NothingToFinalize(StateConflict):
    code = "nothing_to_finalize"
    default_message = "No graded submissions for this enrollment."


@dataclass(frozen=True)
class GradeResult:
    grade: Grade
    created: bool
    percentage: Decimal
    letter_grade: str
    grade_points: float

    @property
    def display_percentage(self) -> Decimal:
        return rounded(self.percentage)


@dataclass
class CourseReport:
    course_id: int
    graded_count: int = 0
    average_percentage: Decimal | None = None
    assignments: list[dict[str, Any]] = field(default_factory=list)
    students: list[dict[str, Any]] = field(default_factory=list)
    letter_distribution: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "course_id": self.course_id,
            "graded_count": self.graded_count,
            "average_percentage": _num(self.average_percentage),
            "assignments": self.assignments,
            "students": self.students,
            "letter_distribution": self.letter_distribution,
        }


def _num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def percentage_of(points_earned, max_points) -> Decimal:
    return Decimal(str(points_earned)) * 100 / Decimal(str(max_points))


def _mean(values: list[Decimal]) -> Decimal | None:
    if not values:
        return None
    return sum(values, Decimal("0")) / len(values)


def rounded(value: Decimal | None) -> Decimal | None:
    return value.quantize(TWO_PLACES, ROUND_HALF_UP) if value is not None else None


def grade_points_for_percentage(percentage) -> tuple[str, float]:
    pct = Decimal(str(percentage))
    for minimum, letter, points in GRADE_BANDS:
        if pct >= minimum:
            return letter, points
    return FAILING_BAND


def letter_for_grade_points(grade_points) -> str:
    """Inverse lookup used for final grades: the best band whose points do not exceed the mean."""
    gp = Decimal(str(grade_points))
    for _, letter, points in GRADE_BANDS:
        if gp >= Decimal(str(points)):
            return letter
    return FAILING_BAND[0]


def grade_submission(
    s: Session,
    submission_id: int,
    points_earned,
    letter_grade: str | None = None,
    feedback: str | None = None,
    *,
    grader: User,
) -> GradeResult:
    """
    Create or overwrite the grade of a submission.

    The submission row lock serializes graders of the same submission; the unique
    submission_id on grades backs it up where row locks are unavailable.
    """
    sub = lock_row(s, Submission, submission_id)
    if sub is None:
        raise SubmissionNotFound()
    assignment = sub.assignment
    if not owns_course(grader, assignment.course):
        raise NotAuthorized("Only the course instructor can grade this submission.")

    points = to_decimal(points_earned)
    if points is None or points < 0 or points > assignment.max_points:
        raise PointsOutOfRange(
            f"Points must be between 0 and {assignment.max_points}.",
            max_points=assignment.max_points,
        )
    if points != points.quantize(TWO_PLACES):
        raise InvalidPoints("Points cannot have more than two decimal places.")

    pct = percentage_of(points, assignment.max_points)
    band_letter, gp = grade_points_for_percentage(pct)
    letter = (letter_grade or "").strip().upper() or band_letter
    if letter not in LETTER_GRADES:
        raise InvalidLetterGrade(f"Unknown letter grade: {letter}")

    now = utcnow()
    values = {
        "points_earned": points,
        "max_points": assignment.max_points,
        "letter_grade": letter,
        "grade_points": Decimal(str(gp)),
        "feedback": (feedback or "").strip() or None,
        "grader_id": grader.id,
        "updated_at": now,
    }

    grade = s.execute(select(Grade).where(Grade.submission_id == sub.id)).scalar_one_or_none()
    created = False
    if grade is None:
        try:
            with s.begin_nested():
                grade = Grade(
                    submission_id=sub.id,
                    assignment_id=assignment.id,
                    student_id=sub.student_id,
                    graded_at=now,
                    **values,
                )
                s.add(grade)
                s.flush()
            created = True
        except IntegrityError:
            # Lost the insert race; fall through to an in-place update.
            grade = s.execute(select(Grade).where(Grade.submission_id == sub.id)).scalar_one()
    if not created:
        for key, value in values.items():
            setattr(grade, key, value)

    sub.status = SUBMISSION_GRADED
    sub.updated_at = now
    s.flush()

    queue_notification(
        s,
        sub.student_id,
        NOTIFY_SUBMISSION_GRADED,
        {
            "submission_id": sub.id,
            "assignment_id": assignment.id,
            "points_earned": str(points),
            "max_points": assignment.max_points,
            "letter_grade": letter,
        },
    )
    record_event(
        s,
        actor=grader,
        action="grade.create" if created else "grade.update",
        entity_type="Grade",
        entity_id=str(grade.id),
        metadata={
            "submission_id": sub.id,
            "points_earned": points,
            "percentage": rounded(pct),
            "letter_grade": letter,
            "grade_points": gp,
        },
    )
    return GradeResult(grade=grade, created=created, percentage=pct, letter_grade=letter, grade_points=gp)


def invalidate_grade(s: Session, submission_id: int) -> dict[str, Any] | None:
    """Delete the grade of a submission, if any. Returns a snapshot of what was removed."""
    grade = s.execute(select(Grade).where(Grade.submission_id == submission_id)).scalar_one_or_none()
    if grade is None:
        return None
    snapshot = {
        "id": grade.id,
        "points_earned": str(grade.points_earned),
        "letter_grade": grade.letter_grade,
        "grader_id": grade.grader_id,
    }
    s.delete(grade)
    s.flush()
    return snapshot


def get_grade(s: Session, submission_id: int) -> Grade | None:
    return s.execute(select(Grade).where(Grade.submission_id == submission_id)).scalar_one_or_none()


def compute_course_aggregate(s: Session, course_id: int) -> CourseReport:
    """
    Averages and letter distribution over the graded work of a course.
    Ungraded submissions are left out of every average rather than counted as zero.
    """
    course = s.get(Course, course_id)
    if course is None:
        raise CourseNotFound()

    assignments = list(
        s.execute(select(Assignment).where(Assignment.course_id == course_id).order_by(Assignment.due_date, Assignment.id)).scalars()
    )
    submission_counts = dict(
        s.execute(
            select(Submission.assignment_id, func.count(Submission.id))
            .join(Assignment, Assignment.id == Submission.assignment_id)
            .where(Assignment.course_id == course_id)
            .group_by(Submission.assignment_id)
        ).all()
    )
    grades = list(
        s.execute(
            select(Grade)
            .join(Assignment, Assignment.id == Grade.assignment_id)
            .where(Assignment.course_id == course_id)
            .order_by(Grade.id)
        ).scalars()
    )

    by_assignment: dict[int, list[Grade]] = defaultdict(list)
    by_student: dict[int, list[Grade]] = defaultdict(list)
    for g in grades:
        by_assignment[g.assignment_id].append(g)
        by_student[g.student_id].append(g)

    def _avg(values: list[Decimal]) -> Decimal | None:
        return rounded(_mean(values))

    report = CourseReport(course_id=course_id, graded_count=len(grades))
    report.average_percentage = _avg([percentage_of(g.points_earned, g.max_points) for g in grades])
    report.letter_distribution = dict(sorted(Counter(g.letter_grade for g in grades).items()))

    for a in assignments:
        graded = by_assignment.get(a.id, [])
        report.assignments.append(
            {
                "assignment_id": a.id,
                "title": a.title,
                "max_points": a.max_points,
                "status": a.status,
                "submissions": submission_counts.get(a.id, 0),
                "graded": len(graded),
                "average_points": _num(_avg([Decimal(g.points_earned) for g in graded])),
                "average_percentage": _num(_avg([percentage_of(g.points_earned, g.max_points) for g in graded])),
            }
        )

    for student_id in sorted(by_student):
        graded = by_student[student_id]
        mean_gp = _mean([Decimal(g.grade_points) for g in graded])
        report.students.append(
            {
                "student_id": student_id,
                "graded": len(graded),
                "average_percentage": _num(_avg([percentage_of(g.points_earned, g.max_points) for g in graded])),
                "average_grade_points": _num(rounded(mean_gp)),
                "letter_grade": letter_for_grade_points(mean_gp) if mean_gp is not None else None,
            }
        )
    return report


def finalize_enrollment(s: Session, enrollment_id: int, *, grader: User) -> Enrollment:
    """Close out an enrollment with the mean grade points of the student's graded work."""
    enrollment = s.get(Enrollment, enrollment_id)
    if enrollment is None:
        raise EnrollmentNotFound()
    if not owns_course(grader, enrollment.course):
        raise NotAuthorized("Only the course instructor can finalize grades.")
    if enrollment.status == ENROLLMENT_COMPLETED:
        raise StateConflict("Enrollment is already completed.")

    points = list(
        s.execute(
            select(Grade.grade_points)
            .join(Assignment, Assignment.id == Grade.assignment_id)
            .where(Assignment.course_id == enrollment.course_id, Grade.student_id == enrollment.student_id)
        ).scalars()
    )
    if not points:
        raise NothingToFinalize()

    mean = _mean([Decimal(p) for p in points])
    return update_status(
        s,
        enrollment.id,
        ENROLLMENT_COMPLETED,
        actor=grader,
        reason="Final grade recorded",
        final_grade=letter_for_grade_points(mean),
        grade_points=rounded(mean),
    )

"""
Ledger Store primitives.

Row-level helpers for the fields written under contention
(Course.current_students, Payment.status, Enrollment.status). Each helper is a
single UPDATE statement whose WHERE clause carries the precondition, so the
check and the write cannot be separated by another writer. The return value
says whether this caller won.
"""
from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.edulms.models import Base

M = TypeVar("M", bound=Base)


def lock_row(s: Session, model: type[M], pk: int) -> M | None:
    """SELECT ... FOR UPDATE by primary key; refreshes any identity-mapped copy."""
    return s.execute(
        select(model)
        .where(model.id == pk)  # type: ignore[attr-defined]
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def guarded_update(s: Session, model: type[M], pk: int, *, expected: dict[str, Any], values: dict[str, Any]) -> bool:
    """
    Compare-and-set: write `values` only if every column in `expected` still holds
    its expected value. Returns True if this call performed the write.
    """
    stmt = update(model).where(model.id == pk)  # type: ignore[attr-defined]
    for column, value in expected.items():
        stmt = stmt.where(getattr(model, column) == value)
    result = s.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1


def bounded_increment(s: Session, model: type[M], pk: int, column: str, ceiling_column: str, *, where: dict[str, Any] | None = None) -> bool:
    """column = column + 1 only while column < ceiling_column. Returns False at the ceiling."""
    col = getattr(model, column)
    stmt = update(model).where(model.id == pk, col < getattr(model, ceiling_column))  # type: ignore[attr-defined]
    for name, value in (where or {}).items():
        stmt = stmt.where(getattr(model, name) == value)
    result = s.execute(stmt.values({column: col + 1}).execution_options(synchronize_session=False))
    return result.rowcount == 1


def floored_decrement(s: Session, model: type[M], pk: int, column: str) -> bool:
    """column = column - 1, never below zero. Returns False if already at zero."""
    col = getattr(model, column)
    stmt = update(model).where(model.id == pk, col > 0)  # type: ignore[attr-defined]
    result = s.execute(stmt.values({column: col - 1}).execution_options(synchronize_session=False))
    return result.rowcount == 1

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(raw: str | None) -> datetime | None:
    if not raw or not str(raw).strip():
        return None
    value = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_iso_date(raw: str | None) -> date | None:
    if not raw or not str(raw).strip():
        return None
    return date.fromisoformat(str(raw).strip()[:10])


def to_decimal(value) -> Decimal | None:
    """Coerce form/JSON numbers to Decimal without float artifacts. Returns None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def to_int(value) -> int | None:
    """Coerce a JSON or query id to int. Returns None if unparseable (bools included)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


@dataclass
class BulkOutcome:
    """Per-item tally for bulk operations; one bad id never blocks the rest."""

    succeeded: list[int] = field(default_factory=list)
    failed: dict[int | str, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": {str(k): v for k, v in self.failed.items()},
            "success_count": self.success_count,
            "failure_count": self.failure_count,
        }

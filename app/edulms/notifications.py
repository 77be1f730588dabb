"""
Notification hook.

Services never talk to a notifier directly. They queue a notification on the
session; the queue is delivered after the surrounding transaction commits and
dropped if it rolls back. Each delivery is attempted once, and a failing
delivery is logged and never reaches the caller.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_notifications"


@dataclass(frozen=True)
class Notification:
    user_id: int
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


class Notifier:
    def notify(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Default hook: delivery is an external collaborator, so just log the signal."""

    def notify(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        logger.info("notify user_id=%s kind=%s payload=%s", user_id, kind, payload)


_notifier: Notifier = LogNotifier()


def get_notifier() -> Notifier:
    return _notifier


def set_notifier(notifier: Notifier) -> Notifier:
    """Install a notifier; returns the previous one."""
    global _notifier
    previous = _notifier
    _notifier = notifier
    return previous


def queue_notification(s: Session, user_id: int, kind: str, payload: dict[str, Any] | None = None) -> None:
    s.info.setdefault(_PENDING_KEY, []).append(Notification(user_id=user_id, kind=kind, payload=payload or {}))


def deliver(notifications: list[Notification], notifier: Notifier | None = None) -> tuple[int, int]:
    """Attempt each notification once. Returns (delivered, failed)."""
    target = notifier or _notifier
    delivered = failed = 0
    for n in notifications:
        try:
            target.notify(n.user_id, n.kind, n.payload)
            delivered += 1
        except Exception:
            failed += 1
            logger.exception("Notification delivery failed (user_id=%s kind=%s)", n.user_id, n.kind)
    return delivered, failed


@event.listens_for(Session, "after_commit")
def _deliver_after_commit(session: Session) -> None:
    # Savepoint releases fire this hook too; only the outermost commit delivers.
    if session.in_nested_transaction():
        return
    queued = session.info.pop(_PENDING_KEY, None)
    if queued:
        deliver(queued)


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    if session.in_nested_transaction():
        return
    dropped = session.info.pop(_PENDING_KEY, None)
    if dropped:
        logger.debug("Discarded %d notification(s) after rollback", len(dropped))

"""
Engine error taxonomy.

Every failure an engine operation reports to its caller is an EngineError subclass
carrying a stable machine code. The four families map onto how a caller reacts:

- ValidationFailed: bad input shape or range; fix the input, do not retry.
- StateConflict: the request contradicts real-world state (full course, terminal payment).
- TransientFailure: infrastructure trouble; safe to retry.
- ReconciliationAnomaly: needs a human; never resolved automatically.
"""
from __future__ import annotations

from typing import Any

from flask import jsonify


class EngineError(Exception):
    code = "error"
    kind = "error"
    http_status = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(EngineError):
    code = "validation_failed"
    kind = "validation"
    http_status = 400


class StateConflict(EngineError):
    code = "state_conflict"
    kind = "conflict"
    http_status = 409


class NotFound(StateConflict):
    code = "not_found"
    http_status = 404
    default_message = "Not found."


class NotAuthorized(StateConflict):
    code = "not_authorized"
    http_status = 403
    default_message = "You are not allowed to perform this action."


class TransientFailure(EngineError):
    code = "transient_failure"
    kind = "transient"
    http_status = 503
    default_message = "Temporary failure; please retry."


class ReconciliationAnomaly(EngineError):
    code = "reconciliation_anomaly"
    kind = "anomaly"
    http_status = 409
    default_message = "Routed to manual review."


def error_response(exc: EngineError):
    return jsonify(exc.to_dict()), exc.http_status

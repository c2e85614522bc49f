"""Error taxonomy and the shared error envelope.

Core operations raise one of the `QueueError` subclasses below. The MQTT
adapter and the CLI clients turn them into / out of `ErrorResponse` messages so
error codes stay consistent across service, terminals and kiosks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class QueueError(Exception):
    """Base class for every error the queue engine reports to its callers."""

    code = "queue_error"

    def __init__(self, message: str, *, entity: str | None = None, entity_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self) -> str:
        if self.entity_id is None:
            return self.message
        return f"{self.message} ({self.entity or 'id'}={self.entity_id})"


class ValidationError(QueueError):
    """Malformed input; rejected before any state mutation."""

    code = "bad_request"


class NotFoundError(QueueError):
    """Referenced ticket, counter or user does not exist."""

    code = "not_found"


class InvalidTransitionError(QueueError):
    """Requested change is not legal from the current state. Re-fetch and retry."""

    code = "invalid_transition"


class ConflictError(QueueError):
    """A concurrent writer got there first (stale version or status)."""

    code = "conflict"


class DependencyUnavailableError(QueueError):
    """Persistence or transport could not complete the operation."""

    code = "dependency_unavailable"


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str
    entity_id: str | None = None

    @classmethod
    def from_exception(cls, exc: QueueError) -> ErrorResponse:
        return cls(code=exc.code, message=exc.message, entity_id=exc.entity_id)

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if self.entity_id is not None:
            msg["entity_id"] = self.entity_id
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg


_ERRORS_BY_CODE: dict[str, type[QueueError]] = {
    cls.code: cls
    for cls in (ValidationError, NotFoundError, InvalidTransitionError, ConflictError, DependencyUnavailableError)
}


def raise_for_error(msg: dict[str, Any]) -> dict[str, Any]:
    """Return `msg` unchanged unless it is an error envelope, in which case raise it.

    Used by clients on replies from the service.
    """
    if msg.get("type") != "error":
        return msg
    exc_type = _ERRORS_BY_CODE.get(str(msg.get("code")), QueueError)
    entity_id = msg.get("entity_id")
    raise exc_type(str(msg.get("message", "")), entity_id=entity_id if isinstance(entity_id, str) else None)

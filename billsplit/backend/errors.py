"""Error outcomes returned by the session gateway.

These exceptions are independent of the transport; the FastAPI adapter maps
them onto HTTP status codes.
"""

from __future__ import annotations

from typing import Any


class BillSplitError(Exception):
    """Base exception for all bill splitting errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BillSplitError):
    """Raised for malformed or out-of-range input, before anything is persisted."""


class NotFoundError(BillSplitError):
    """Raised when a referenced session, item or participant does not exist."""


class SessionNotFound(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(message=f"Session not found: {session_id}", details={"sessionId": session_id})


class ItemNotFound(NotFoundError):
    def __init__(self, item_id: str) -> None:
        super().__init__(message=f"Item not found: {item_id}", details={"itemId": item_id})


class ParticipantNotFound(NotFoundError):
    def __init__(self, participant_id: str) -> None:
        super().__init__(
            message=f"Participant not found: {participant_id}",
            details={"participantId": participant_id},
        )


class TransientStoreError(BillSplitError):
    """Raised when the session store is unreachable or too slow.

    The caller decides whether to retry; the gateway never retries on its own.
    """

    def __init__(self, operation: str, reason: str | None = None) -> None:
        message = f"Session store {operation} failed"
        if reason:
            message += f": {reason}"
        super().__init__(message=message, details={"operation": operation, "reason": reason})

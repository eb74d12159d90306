"""Error taxonomy for the conversation core.

Write paths raise these internally and convert them into an ``OperationError`` payload at the
operation boundary, so callers (the UI layer) only ever see structured results.
"""
from typing import Any, Literal, Optional

from pydantic import BaseModel

ErrorKind = Literal["validation", "upload", "write"]


class TicketDeskError(Exception):
    kind: ErrorKind = "write"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> "OperationError":
        return OperationError(kind=self.kind, message=self.message, details=self.details)


class ValidationError(TicketDeskError):
    """Rejected before any network call; never retried automatically."""

    kind: ErrorKind = "validation"


class UploadError(TicketDeskError):
    """Attachment phase of a reply failed; no comment was created."""

    kind: ErrorKind = "upload"


class WriteError(TicketDeskError):
    """A comment, patch or merge request failed server-side or over the network."""

    kind: ErrorKind = "write"


class StaleResponseError(TicketDeskError):
    """A response arrived for a ticket/session that is no longer active. Never surfaced."""


class ApiError(Exception):
    """Non-2xx response (or transport failure when status_code is None) from the ticket API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        server_message: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.server_message = server_message
        self.payload = payload or {}

    def user_message(self, fallback: str) -> str:
        """Server's message when it sent one, ``fallback`` otherwise."""
        return self.server_message or fallback


class OperationError(BaseModel):
    kind: ErrorKind
    message: str
    details: dict[str, Any] = {}

"""Mutation intents and the pure reducer that applies them to a ticket snapshot."""
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ticketdesk.schemas.ticket import CommentOut, TicketOut, TicketPriority, TicketStatus, UserOut


class _Intent(BaseModel):
    model_config = ConfigDict(frozen=True)


class SetStatus(_Intent):
    kind: Literal["status"] = "status"
    status: TicketStatus


class SetAssignee(_Intent):
    kind: Literal["assignee"] = "assignee"
    assigneeId: Optional[str] = None
    assignee: Optional[UserOut] = None


class SetPriority(_Intent):
    kind: Literal["priority"] = "priority"
    priority: TicketPriority


class AppendComment(_Intent):
    kind: Literal["comment"] = "comment"
    comment: CommentOut


Intent = Annotated[Union[SetStatus, SetAssignee, SetPriority, AppendComment], Field(discriminator="kind")]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def apply(snapshot: TicketOut, intent: Intent, now: Optional[datetime] = None) -> TicketOut:
    """Return a new snapshot with ``intent`` merged in. ``snapshot`` is never modified."""
    updated_at = max(snapshot.updatedAt, now or _now())
    if isinstance(intent, SetStatus):
        changes = {"status": intent.status}
    elif isinstance(intent, SetAssignee):
        assignee = None
        if intent.assigneeId is not None:
            assignee = intent.assignee or UserOut(id=intent.assigneeId)
        changes = {"assignee": assignee}
    elif isinstance(intent, SetPriority):
        changes = {"priority": intent.priority}
    elif isinstance(intent, AppendComment):
        changes = {"comments": [*snapshot.comments, intent.comment]}
    else:
        raise TypeError(f"Unknown intent: {intent!r}")
    return snapshot.model_copy(update={**changes, "updatedAt": updated_at})


def to_patch(intent: Intent) -> dict:
    """Request body for PUT /api/tickets/{id}; AppendComment goes through the reply endpoint."""
    if isinstance(intent, SetStatus):
        return {"status": intent.status.value}
    if isinstance(intent, SetAssignee):
        return {"assigneeId": intent.assigneeId}
    if isinstance(intent, SetPriority):
        return {"priority": intent.priority.value}
    raise ValueError(f"{type(intent).__name__} has no ticket patch encoding")

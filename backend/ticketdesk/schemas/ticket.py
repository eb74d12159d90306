"""Request/response schemas for tickets, comments, attachments and users.

The response models double as the in-memory ticket snapshot held by the state store, so they
are frozen: a changed snapshot is always a new object produced by a reducer.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _as_utc(value: datetime) -> datetime:
    # SQLite and some clients drop tzinfo; naive timestamps are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class TicketStatus(str, Enum):
    """Ticket lifecycle status."""

    NEW = "new"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING_CUSTOMER = "pending_customer"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    """Ticket priority level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)


class UserOut(_Snapshot):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class AttachmentOut(_Snapshot):
    id: int
    originalFilename: str
    fileSize: int
    mimeType: str
    uploadedAt: UtcDatetime
    commentId: Optional[int] = None
    ticketId: Optional[int] = None


class CommentOut(_Snapshot):
    id: int
    commentText: Optional[str] = None
    createdAt: UtcDatetime
    commenter: Optional[UserOut] = None
    isInternalNote: bool = False
    isFromCustomer: bool = False
    isOutgoingReply: bool = False
    attachments: list[AttachmentOut] = Field(default_factory=list)
    externalMessageId: Optional[str] = None  # inbound email threading


class MergedTicketOut(_Snapshot):
    id: int
    title: str
    status: TicketStatus
    mergedAt: UtcDatetime


class TicketOut(_Snapshot):
    id: int
    title: str
    description: Optional[str] = None
    status: TicketStatus = TicketStatus.NEW
    priority: TicketPriority = TicketPriority.MEDIUM
    type: Optional[str] = None
    assignee: Optional[UserOut] = None
    reporter: Optional[UserOut] = None
    # External customer, distinct from reporter
    senderName: Optional[str] = None
    senderEmail: Optional[str] = None
    senderPhone: Optional[str] = None
    orderNumber: Optional[str] = None
    trackingNumber: Optional[str] = None
    createdAt: UtcDatetime
    updatedAt: UtcDatetime
    comments: list[CommentOut] = Field(default_factory=list)
    attachments: list[AttachmentOut] = Field(default_factory=list)
    mergedIntoTicketId: Optional[int] = None
    mergedTickets: list[MergedTicketOut] = Field(default_factory=list)

    @property
    def is_merged(self) -> bool:
        return self.mergedIntoTicketId is not None


class TicketSummaryOut(BaseModel):
    id: int
    title: str
    status: TicketStatus
    priority: TicketPriority
    senderEmail: Optional[str] = None
    assigneeId: Optional[str] = None
    mergedIntoTicketId: Optional[int] = None
    createdAt: UtcDatetime
    updatedAt: UtcDatetime


class TicketCreateIn(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    priority: TicketPriority = TicketPriority.MEDIUM
    type: Optional[str] = None
    reporterId: Optional[str] = None
    senderName: Optional[str] = None
    senderEmail: Optional[str] = None
    senderPhone: Optional[str] = None
    orderNumber: Optional[str] = None
    trackingNumber: Optional[str] = None


class TicketUpdateIn(BaseModel):
    """Partial update: only fields present in the request body change."""

    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    assigneeId: Optional[str] = None  # explicit null unassigns


class ReplyIn(BaseModel):
    content: str = ""
    isInternalNote: bool = False
    sendAsEmail: bool = False
    attachmentIds: list[int] = Field(default_factory=list)


class AttachmentUploadOut(BaseModel):
    attachments: list[AttachmentOut]


class MergeIn(BaseModel):
    sourceTicketIds: list[int] = Field(min_length=1)


class MergeSourceResult(BaseModel):
    ticketId: int
    merged: bool
    error: Optional[str] = None


class MergeOut(BaseModel):
    primaryTicketId: int
    message: str
    results: list[MergeSourceResult]

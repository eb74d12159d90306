"""Conversation assembler: one chronologically ordered timeline per ticket."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ticketdesk.conversation.classifier import MessageVariant, classify_message, variant_from_flags
from ticketdesk.schemas.ticket import AttachmentOut, CommentOut, TicketOut, UserOut

# Real comment ids are positive and optimistic ones are large negatives
DESCRIPTION_ENTRY_ID = -1


class TimelineEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    text: Optional[str] = None
    createdAt: datetime
    author: Optional[UserOut] = None
    variant: MessageVariant
    isInternalNote: bool = False
    isFromCustomer: bool = False
    isOutgoingReply: bool = False
    attachments: list[AttachmentOut] = Field(default_factory=list)
    isDescription: bool = False
    suggestion: Optional[str] = None
    suggestionTitle: Optional[str] = None
    externalMessageId: Optional[str] = None

    @property
    def display_text(self) -> Optional[str]:
        """Text to render: the extracted payload for AI suggestions, the raw text otherwise."""
        if self.variant is MessageVariant.AI_SUGGESTION:
            return self.suggestion
        return self.text


def _description_entry(ticket: TicketOut) -> TimelineEntry:
    return TimelineEntry(
        id=DESCRIPTION_ENTRY_ID,
        text=ticket.description,
        createdAt=ticket.createdAt,
        author=ticket.reporter,
        variant=variant_from_flags(is_internal_note=False, is_outgoing_reply=False, is_from_customer=True),
        isFromCustomer=True,
        attachments=[a for a in ticket.attachments if a.commentId is None],
        isDescription=True,
    )


def comment_entry(comment: CommentOut) -> TimelineEntry:
    classified = classify_message(comment)
    return TimelineEntry(
        id=comment.id,
        text=comment.commentText,
        createdAt=comment.createdAt,
        author=comment.commenter,
        variant=classified.variant,
        isInternalNote=comment.isInternalNote,
        isFromCustomer=comment.isFromCustomer,
        isOutgoingReply=comment.isOutgoingReply,
        attachments=list(comment.attachments),
        suggestion=classified.suggestion,
        suggestionTitle=classified.suggestionTitle,
        externalMessageId=comment.externalMessageId,
    )


def assemble(ticket: TicketOut) -> list[TimelineEntry]:
    """
    Description (if any) followed by every comment, sorted by createdAt ascending.
    sorted() is stable, so equal timestamps keep the description first and comments in API order.
    """
    entries: list[TimelineEntry] = []
    if ticket.description is not None:
        entries.append(_description_entry(ticket))
    entries.extend(comment_entry(c) for c in ticket.comments)
    return sorted(entries, key=lambda e: e.createdAt)


def search_timeline(entries: list[TimelineEntry], query: str) -> list[TimelineEntry]:
    """Case-insensitive match on message text, author name/email and attachment filenames."""
    needle = query.strip().lower()
    if not needle:
        return list(entries)
    found = []
    for e in entries:
        haystack = [e.display_text or "", e.suggestionTitle or ""]
        if e.author:
            haystack += [e.author.name or "", e.author.email or ""]
        haystack += [a.originalFilename for a in e.attachments]
        if any(needle in h.lower() for h in haystack):
            found.append(e)
    return found


def latest_customer_entry(entries: list[TimelineEntry]) -> Optional[TimelineEntry]:
    """Most recent inbound customer message; the one an agent's reply answers."""
    for e in reversed(entries):
        if e.variant is MessageVariant.INCOMING_FROM_CUSTOMER:
            return e
    return None

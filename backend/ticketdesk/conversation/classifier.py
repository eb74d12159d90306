"""Message classifier: derive one display variant per comment.

AI-authored suggestions are stored as internal notes whose text starts with a marker such as
``**AI Suggested Reply:**``. The marker table below is the only place that knows about that
convention; everything downstream works with ``MessageVariant`` and ``ClassifiedMessage``.
"""
from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, ConfigDict

from ticketdesk.schemas.ticket import CommentOut


class MessageVariant(str, Enum):
    """Closed set of display variants, listed in precedence order."""

    AI_SUGGESTION = "ai_suggestion"
    INTERNAL_NOTE = "internal_note"
    OUTGOING_REPLY = "outgoing_reply"
    INCOMING_FROM_CUSTOMER = "incoming_from_customer"
    SYSTEM = "system"


class SuggestionMarker(NamedTuple):
    marker: str
    title: Optional[str]  # None: no dedicated label, use GENERIC_SUGGESTION_TITLE


GENERIC_SUGGESTION_TITLE = "AI Suggestion"

# Bump when markers are added or retitled; stored notes keep whatever marker they were written with.
MARKER_TABLE_VERSION = 2

AI_SUGGESTION_MARKERS: tuple[SuggestionMarker, ...] = (
    SuggestionMarker("**AI Suggested Reply:**", "AI General Reply"),
    SuggestionMarker("**Order Status Found - Suggested Reply:**", "AI Order Status Reply"),
    SuggestionMarker("**Suggested Reply (Request for Lot #):**", "AI COA/Lot# Reply"),
    SuggestionMarker("**Order Status Reply:**", "AI Order Status Reply"),
    SuggestionMarker("**Suggested Reply (SDS Document):**", "AI SDS Reply"),
    SuggestionMarker("**Suggested Reply (COC Information):**", "AI COC Reply"),
    SuggestionMarker("**Suggested Reply (Document Request):**", "AI Document Reply"),
    SuggestionMarker("**AI Order Status Reply:**", "AI Order Status Reply"),
    SuggestionMarker("**AI COA Reply:**", "AI COA/Lot# Reply"),
    SuggestionMarker("**AI Welcome Email Suggestion:**", None),
    SuggestionMarker("**AI Follow-Up Actions:**", None),
    SuggestionMarker("**AI Onboarding Checklist:**", None),
    SuggestionMarker("**AI Response Templates:**", None),
    SuggestionMarker("**AI Customer Service Tips:**", None),
    SuggestionMarker("**AI Cost Savings:**", None),
)

# Longest first so a marker that prefixes another can never shadow it
_MARKERS_BY_LENGTH = sorted(AI_SUGGESTION_MARKERS, key=lambda m: len(m.marker), reverse=True)


class ClassifiedMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    variant: MessageVariant
    suggestion: Optional[str] = None
    suggestionTitle: Optional[str] = None


def match_marker(text: Optional[str]) -> Optional[SuggestionMarker]:
    """Return the AI marker ``text`` starts with, if any. Prefix test on the raw text."""
    if not text:
        return None
    for entry in _MARKERS_BY_LENGTH:
        if text.startswith(entry.marker):
            return entry
    return None


def _strip_marker(text: str, marker: str) -> str:
    rest = text[len(marker):]
    line_end = rest.find("\n")
    if line_end != -1 and not rest[:line_end].strip():
        rest = rest[line_end + 1:]
    return rest.strip()


def is_ai_suggestion(comment: CommentOut) -> bool:
    return match_marker(comment.commentText) is not None


def extract_suggestion(comment: CommentOut) -> Optional[str]:
    """Suggested reply text with the marker stripped, or None for non-AI comments."""
    entry = match_marker(comment.commentText)
    if entry is None:
        return None
    return _strip_marker(comment.commentText, entry.marker)


def suggestion_title(comment: CommentOut) -> Optional[str]:
    entry = match_marker(comment.commentText)
    if entry is None:
        return None
    return entry.title or GENERIC_SUGGESTION_TITLE


def variant_from_flags(
    *,
    is_internal_note: bool,
    is_outgoing_reply: bool,
    is_from_customer: bool,
) -> MessageVariant:
    # Flags can overlap in stored data; first match wins
    if is_internal_note:
        return MessageVariant.INTERNAL_NOTE
    if is_outgoing_reply:
        return MessageVariant.OUTGOING_REPLY
    if is_from_customer:
        return MessageVariant.INCOMING_FROM_CUSTOMER
    return MessageVariant.SYSTEM


def classify(comment: CommentOut) -> MessageVariant:
    if is_ai_suggestion(comment):
        return MessageVariant.AI_SUGGESTION
    return variant_from_flags(
        is_internal_note=comment.isInternalNote,
        is_outgoing_reply=comment.isOutgoingReply,
        is_from_customer=comment.isFromCustomer,
    )


def classify_message(comment: CommentOut) -> ClassifiedMessage:
    """Variant plus, for AI suggestions, the extracted payload and its human title."""
    entry = match_marker(comment.commentText)
    if entry is None:
        return ClassifiedMessage(variant=classify(comment))
    return ClassifiedMessage(
        variant=MessageVariant.AI_SUGGESTION,
        suggestion=_strip_marker(comment.commentText, entry.marker),
        suggestionTitle=entry.title or GENERIC_SUGGESTION_TITLE,
    )

"""Conversation timeline: classify comments and assemble them into one ordered thread."""
from ticketdesk.conversation.classifier import (
    AI_SUGGESTION_MARKERS,
    ClassifiedMessage,
    MessageVariant,
    classify,
    classify_message,
    extract_suggestion,
    suggestion_title,
)
from ticketdesk.conversation.timeline import DESCRIPTION_ENTRY_ID, TimelineEntry, assemble

__all__ = [
    "AI_SUGGESTION_MARKERS",
    "ClassifiedMessage",
    "MessageVariant",
    "classify",
    "classify_message",
    "extract_suggestion",
    "suggestion_title",
    "DESCRIPTION_ENTRY_ID",
    "TimelineEntry",
    "assemble",
]

"""Optimistic ticket state: intents, the pure reducer and the store that owns the snapshot."""
from ticketdesk.state.intents import AppendComment, Intent, SetAssignee, SetPriority, SetStatus, apply
from ticketdesk.state.store import MutationResult, TicketStore, temporary_comment_id

__all__ = [
    "AppendComment",
    "Intent",
    "SetAssignee",
    "SetPriority",
    "SetStatus",
    "apply",
    "MutationResult",
    "TicketStore",
    "temporary_comment_id",
]

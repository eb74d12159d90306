"""Optimistic ticket state store.

The store keeps the last snapshot confirmed by the server plus an outbox of speculative intents.
What the UI reads (``snapshot``) is the confirmed snapshot with every pending intent re-applied in
the order it was issued. Confirmations replace the confirmed snapshot only when the server copy is
at least as recent, so they may arrive in any order; failures drop the intent and re-fetch
(rollback-by-refetch, never inverse-apply, since other agents may have changed the ticket).

Every network round-trip captures ``(ticket_id, generation)`` before suspending. ``close()`` and
``switch()`` bump the generation, and a response that comes back for an old token is discarded.
"""
import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from ticketdesk.errors import ApiError, OperationError, StaleResponseError, ValidationError, WriteError
from ticketdesk.schemas.ticket import CommentOut, TicketOut
from ticketdesk.services.api_client import TicketApiClient
from ticketdesk.state.intents import AppendComment, Intent, SetAssignee, SetStatus, apply, to_patch

logger = logging.getLogger(__name__)

Listener = Callable[[TicketOut], None]

_FALLBACK_MESSAGES = {
    "status": "Could not update ticket status. Please try again.",
    "assignee": "Could not update ticket assignee. Please try again.",
    "priority": "Could not update ticket priority. Please try again.",
}

_last_temporary_id = 0


def temporary_comment_id() -> int:
    """
    Locally unique id for an optimistic comment, derived from the monotonic clock.
    Negative and far below the description sentinel (-1), so it never collides with server ids.
    """
    global _last_temporary_id
    _last_temporary_id = max(time.monotonic_ns(), _last_temporary_id + 1)
    return -_last_temporary_id


@dataclass(frozen=True)
class _Pending:
    intent: Intent
    issued_at: datetime


class MutationResult(BaseModel):
    ok: bool
    snapshot: Optional[TicketOut] = None
    error: Optional[OperationError] = None
    discarded: bool = False  # response arrived after close()/switch(); nothing was applied


class TicketStore:
    """Single owner of one ticket's snapshot. All changes go through intents."""

    def __init__(
        self,
        client: TicketApiClient,
        ticket_id: int,
        *,
        snapshot: Optional[TicketOut] = None,
    ) -> None:
        self._client = client
        self._ticket_id = ticket_id
        self._confirmed: Optional[TicketOut] = snapshot
        self._pending: dict[int, _Pending] = {}
        self._request_seq = itertools.count(1)
        self._generation = 0
        self._listeners: list[Listener] = []
        self._closed = False

    # ---------- Reads ----------
    @property
    def ticket_id(self) -> int:
        return self._ticket_id

    @property
    def is_loaded(self) -> bool:
        return self._confirmed is not None

    @property
    def confirmed(self) -> Optional[TicketOut]:
        return self._confirmed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def snapshot(self) -> TicketOut:
        if self._confirmed is None:
            raise ValidationError(f"Ticket #{self._ticket_id} is not loaded")
        current = self._confirmed
        for p in self._pending.values():
            current = apply(current, p.intent, now=p.issued_at)
        return current

    # ---------- Subscription / lifecycle ----------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        """Detach the store (view unmounted). In-flight responses will be discarded."""
        self._generation += 1
        self._closed = True
        self._listeners.clear()
        self._pending.clear()

    def switch(self, ticket_id: int, snapshot: Optional[TicketOut] = None) -> None:
        """Point the store at another ticket; responses for the previous one are discarded."""
        self._generation += 1
        self._ticket_id = ticket_id
        self._confirmed = snapshot
        self._pending.clear()
        self._closed = False
        self._notify()

    @property
    def session_token(self) -> tuple[int, int]:
        """Capture before a network call; compare with ``is_current`` when the response lands."""
        return self._ticket_id, self._generation

    def is_current(self, token: Optional[tuple[int, int]]) -> bool:
        return not self._closed and token == self.session_token

    def _ensure_current(self, token: tuple[int, int], what: str) -> None:
        if not self.is_current(token):
            raise StaleResponseError(f"Discarding {what} for ticket #{token[0]} (generation {token[1]})")

    def _notify(self) -> None:
        if self._confirmed is None:
            return
        snapshot = self.snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning("Ticket store listener failed: %s", e, exc_info=True)

    # ---------- Reconciliation ----------
    def _adopt(self, server: TicketOut) -> bool:
        """Take the server snapshot unless the one we already hold is newer."""
        if server.id != self._ticket_id:
            return False
        if self._confirmed is not None and server.updatedAt < self._confirmed.updatedAt:
            logger.debug(
                "Ignoring older server snapshot for ticket #%s (%s < %s)",
                server.id, server.updatedAt, self._confirmed.updatedAt,
            )
            return False
        self._confirmed = server
        return True

    async def refresh(self) -> Optional[TicketOut]:
        """
        Re-fetch the ticket and adopt it. Returns the visible snapshot, or None when the response
        was stale. Raises ApiError if the fetch itself fails.
        """
        token = self.session_token
        fetched = await self._client.get_ticket(token[0])
        try:
            self._ensure_current(token, "ticket fetch")
        except StaleResponseError as e:
            logger.debug("%s", e)
            return None
        self._adopt(fetched)
        self._notify()
        return self.snapshot

    async def load(self) -> Optional[TicketOut]:
        return await self.refresh()

    # ---------- Outbox ----------
    def apply_optimistic(self, intent: Intent) -> int:
        """Record ``intent`` as pending and return its request sequence number."""
        if self._closed:
            raise StaleResponseError(f"Ticket store for #{self._ticket_id} is closed")
        snapshot = self.snapshot
        if snapshot.is_merged and isinstance(intent, (SetStatus, SetAssignee)):
            raise ValidationError(
                f"Ticket #{snapshot.id} was merged into #{snapshot.mergedIntoTicketId} and can no longer be changed",
                details={"mergedIntoTicketId": snapshot.mergedIntoTicketId},
            )
        seq = next(self._request_seq)
        self._pending[seq] = _Pending(intent=intent, issued_at=datetime.now(timezone.utc))
        self._notify()
        return seq

    def confirm(self, seq: int, server: Optional[TicketOut] = None) -> None:
        self._pending.pop(seq, None)
        if server is not None:
            self._adopt(server)
        self._notify()

    def confirm_comment(self, seq: int, comment: CommentOut) -> None:
        """Swap the optimistic comment for the server's copy (real id) until the next refresh."""
        pending = self._pending.pop(seq, None)
        if pending is not None and not isinstance(pending.intent, AppendComment):
            logger.warning("Request %s was not a comment append", seq)
        if self._confirmed is not None and all(c.id != comment.id for c in self._confirmed.comments):
            self._confirmed = self._confirmed.model_copy(
                update={
                    "comments": [*self._confirmed.comments, comment],
                    "updatedAt": max(self._confirmed.updatedAt, comment.createdAt),
                }
            )
        self._notify()

    async def rollback(self, seq: int) -> None:
        """Drop a failed intent and restore the server's view by re-fetching."""
        self._pending.pop(seq, None)
        try:
            refreshed = await self.refresh()
        except ApiError as e:
            logger.warning("Rollback refresh for ticket #%s failed: %s", self._ticket_id, e.message)
            self._notify()
            return
        if refreshed is None:
            logger.debug("Rollback for request %s landed after the store moved on", seq)

    async def dispatch(self, intent: Intent) -> MutationResult:
        """Apply a status/assignee/priority change optimistically and sync it with the server."""
        if isinstance(intent, AppendComment):
            return MutationResult(
                ok=False,
                error=OperationError(kind="validation", message="Comments are added through submit_reply"),
            )
        try:
            seq = self.apply_optimistic(intent)
        except ValidationError as e:
            return MutationResult(ok=False, error=e.to_payload())
        except StaleResponseError as e:
            logger.debug("%s", e)
            return MutationResult(ok=False, discarded=True)

        token = self.session_token
        try:
            server = await self._client.update_ticket(token[0], to_patch(intent))
        except ApiError as e:
            if not self.is_current(token):
                logger.debug("Discarding failed %s update for closed ticket #%s", intent.kind, token[0])
                return MutationResult(ok=False, discarded=True)
            await self.rollback(seq)
            error = WriteError(
                e.user_message(_FALLBACK_MESSAGES[intent.kind]),
                details={"statusCode": e.status_code, **e.payload},
            )
            return MutationResult(ok=False, snapshot=self._snapshot_or_none(), error=error.to_payload())

        try:
            self._ensure_current(token, f"{intent.kind} update")
        except StaleResponseError as e:
            logger.debug("%s", e)
            return MutationResult(ok=False, discarded=True)
        self.confirm(seq, server)
        return MutationResult(ok=True, snapshot=self.snapshot)

    def _snapshot_or_none(self) -> Optional[TicketOut]:
        return self.snapshot if self._confirmed is not None else None

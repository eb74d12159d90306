"""Merge duplicate tickets into a primary ticket."""
import logging
from typing import Optional

from pydantic import BaseModel, Field

from ticketdesk.errors import ApiError, OperationError, ValidationError, WriteError
from ticketdesk.schemas.ticket import MergeSourceResult, TicketOut
from ticketdesk.services.api_client import TicketApiClient
from ticketdesk.state.store import TicketStore

logger = logging.getLogger(__name__)


class MergeResult(BaseModel):
    ok: bool
    primaryTicketId: int
    results: list[MergeSourceResult] = Field(default_factory=list)
    primary: Optional[TicketOut] = None  # reconciled primary snapshot after a successful merge
    error: Optional[OperationError] = None


def _normalize_sources(primary_ticket_id: int, source_ticket_ids: list[int]) -> list[int]:
    """Drop duplicates (first occurrence wins) and reject empty or self-referencing requests."""
    sources = list(dict.fromkeys(source_ticket_ids))
    if not sources:
        raise ValidationError("Please select at least one ticket to merge.")
    if primary_ticket_id in sources:
        raise ValidationError(
            "A ticket cannot be merged into itself.",
            details={"ticketId": primary_ticket_id},
        )
    return sources


async def _check_mergeable(client: TicketApiClient, primary_ticket_id: int, sources: list[int]) -> None:
    """Fetch every ticket involved and reject absorbed tickets before writing anything."""
    try:
        primary = await client.get_ticket(primary_ticket_id)
    except ApiError as e:
        raise WriteError(e.user_message(f"Could not load ticket #{primary_ticket_id}."), details={"statusCode": e.status_code}) from e
    if primary.is_merged:
        raise ValidationError(
            f"Primary ticket #{primary_ticket_id} is not a valid merge target; "
            f"it was merged into #{primary.mergedIntoTicketId}.",
            details={"ticketId": primary_ticket_id, "mergedIntoTicketId": primary.mergedIntoTicketId},
        )
    rejected: list[MergeSourceResult] = []
    for source_id in sources:
        try:
            source = await client.get_ticket(source_id)
        except ApiError as e:
            if e.status_code == 404:
                rejected.append(MergeSourceResult(ticketId=source_id, merged=False, error="Ticket not found."))
                continue
            raise WriteError(e.user_message(f"Could not load ticket #{source_id}."), details={"statusCode": e.status_code}) from e
        if source.is_merged:
            rejected.append(
                MergeSourceResult(
                    ticketId=source_id,
                    merged=False,
                    error=f"Ticket #{source_id} has already been merged into #{source.mergedIntoTicketId}.",
                )
            )
    if rejected:
        raise ValidationError(
            "; ".join(r.error for r in rejected),
            details={"results": [r.model_dump() for r in rejected]},
        )


def _results_from_error(e: ApiError, sources: list[int]) -> list[MergeSourceResult]:
    raw = e.payload.get("results")
    if not isinstance(raw, list):
        return []
    try:
        results = [MergeSourceResult.model_validate(r) for r in raw]
    except ValueError:
        return []
    return [r for r in results if r.ticketId in sources]


async def merge_tickets(
    client: TicketApiClient,
    primary_ticket_id: int,
    source_ticket_ids: list[int],
    *,
    store: Optional[TicketStore] = None,
) -> MergeResult:
    """
    Fold ``source_ticket_ids`` into ``primary_ticket_id``.

    Never assumes success: when the API does not report per-source results the whole request is
    treated as failed and must be retried with the full set. On success the primary ticket's store
    (if given) is reloaded so ``mergedTickets`` is current before the UI shows it.
    """
    try:
        sources = _normalize_sources(primary_ticket_id, source_ticket_ids)
        await _check_mergeable(client, primary_ticket_id, sources)
    except (ValidationError, WriteError) as e:
        results = [MergeSourceResult.model_validate(r) for r in e.details.get("results", [])]
        return MergeResult(ok=False, primaryTicketId=primary_ticket_id, results=results, error=e.to_payload())

    try:
        out = await client.merge_tickets(primary_ticket_id, sources)
    except ApiError as e:
        logger.warning("Merging %s into ticket #%s failed: %s", sources, primary_ticket_id, e.message)
        error = WriteError(e.user_message("Failed to merge tickets."), details={"statusCode": e.status_code})
        return MergeResult(
            ok=False,
            primaryTicketId=primary_ticket_id,
            results=_results_from_error(e, sources),
            error=error.to_payload(),
        )

    reported = {r.ticketId: r for r in out.results}
    results = [reported.get(s) or MergeSourceResult(ticketId=s, merged=False, error="No result reported.") for s in sources]
    failed = [r for r in results if not r.merged]
    logger.info("Merged %s ticket(s) into #%s", len(results) - len(failed), primary_ticket_id)

    primary: Optional[TicketOut] = None
    if store is not None and store.ticket_id == primary_ticket_id:
        try:
            primary = await store.refresh()
        except ApiError as e:
            logger.warning("Reloading ticket #%s after merge failed: %s", primary_ticket_id, e.message)

    if failed:
        error = WriteError(
            "; ".join(f"#{r.ticketId}: {r.error or 'not merged'}" for r in failed),
            details={"failedTicketIds": [r.ticketId for r in failed]},
        )
        return MergeResult(
            ok=False,
            primaryTicketId=primary_ticket_id,
            results=results,
            primary=primary,
            error=error.to_payload(),
        )
    return MergeResult(ok=True, primaryTicketId=primary_ticket_id, results=results, primary=primary)

"""Async client for the ticket API consumed by the conversation core."""
import logging
from typing import Any, Iterable, Optional, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ticketdesk.config import get_settings
from ticketdesk.errors import ApiError
from ticketdesk.schemas.ticket import AttachmentOut, AttachmentUploadOut, CommentOut, MergeOut, TicketOut, UserOut

logger = logging.getLogger(__name__)

# (filename, content, mime type) as accepted by httpx multipart uploads
UploadTuple = tuple[str, bytes, str]


def _server_message(r: httpx.Response) -> Optional[str]:
    """Message from the response body ("detail" from FastAPI, "error" from older endpoints), if any."""
    try:
        data = r.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        detail = data.get("detail") if data.get("detail") is not None else data.get("error")
        if isinstance(detail, str) and detail:
            return detail
        if isinstance(detail, dict) and isinstance(detail.get("message"), str):
            return detail["message"]
        if isinstance(detail, list) and detail:
            first = detail[0]
            if isinstance(first, dict) and first.get("msg"):
                return str(first["msg"])
    text = r.text.strip()
    if text and "<html" not in text[:200].lower():
        return text[:500]
    return None


_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _parse(model: type[_ModelT], data: Any, what: str) -> _ModelT:
    """Validate a 2xx body; a malformed one is reported like any other API failure."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        logger.warning("Ticket API returned a malformed %s: %s", what, e)
        raise ApiError(f"Unexpected {what} from the ticket service.") from e


def _error_payload(r: httpx.Response) -> dict[str, Any]:
    try:
        data = r.json()
    except ValueError:
        return {}
    if isinstance(data, dict):
        detail = data.get("detail")
        return detail if isinstance(detail, dict) else data
    return {}


class TicketApiClient:
    """
    Thin wrapper over the ticket endpoints. Every method raises ApiError on a non-2xx response or
    transport failure; callers convert that into their own error kind.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.api_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                r = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Ticket API %s %s failed: %s", method, path, e)
            raise ApiError(f"Could not reach the ticket service: {e!s}") from e
        if r.status_code >= 400:
            server_message = _server_message(r)
            logger.warning("Ticket API %s %s error %s: %s", method, path, r.status_code, server_message)
            raise ApiError(
                server_message or f"HTTP {r.status_code}",
                status_code=r.status_code,
                server_message=server_message,
                payload=_error_payload(r),
            )
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            logger.warning("Ticket API %s %s returned a non-JSON body (status %s)", method, path, r.status_code)
            raise ApiError("Unexpected response from the ticket service.", status_code=r.status_code) from e

    async def get_ticket(self, ticket_id: int) -> TicketOut:
        data = await self._request("GET", f"/api/tickets/{ticket_id}")
        return _parse(TicketOut, data, "ticket")

    async def update_ticket(self, ticket_id: int, patch: dict[str, Any]) -> TicketOut:
        """PUT partial update; only keys present in ``patch`` change."""
        data = await self._request("PUT", f"/api/tickets/{ticket_id}", json=patch)
        return _parse(TicketOut, data, "ticket")

    async def upload_attachments(self, ticket_id: int, files: Iterable[UploadTuple]) -> list[AttachmentOut]:
        multipart = [("files", (name, content, mime)) for name, content, mime in files]
        data = await self._request("POST", f"/api/tickets/{ticket_id}/attachments", files=multipart)
        return _parse(AttachmentUploadOut, data, "upload result").attachments

    async def create_reply(
        self,
        ticket_id: int,
        *,
        content: str,
        is_internal_note: bool,
        send_as_email: bool,
        attachment_ids: list[int],
    ) -> CommentOut:
        data = await self._request(
            "POST",
            f"/api/tickets/{ticket_id}/reply",
            json={
                "content": content,
                "isInternalNote": is_internal_note,
                "sendAsEmail": send_as_email,
                "attachmentIds": attachment_ids,
            },
        )
        return _parse(CommentOut, data, "comment")

    async def merge_tickets(self, primary_ticket_id: int, source_ticket_ids: list[int]) -> MergeOut:
        data = await self._request(
            "POST",
            f"/api/tickets/{primary_ticket_id}/merge",
            json={"sourceTicketIds": source_ticket_ids},
        )
        return _parse(MergeOut, data, "merge result")

    async def list_users(self) -> list[UserOut]:
        data = await self._request("GET", "/api/users")
        if data is not None and not isinstance(data, list):
            raise ApiError("Unexpected user list from the ticket service.")
        return [_parse(UserOut, u, "user") for u in data or []]

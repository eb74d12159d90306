"""Reply submission: upload attachments, then create the comment, then reconcile the ticket."""
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from ticketdesk.config import get_settings
from ticketdesk.errors import ApiError, OperationError, StaleResponseError, UploadError, ValidationError, WriteError
from ticketdesk.schemas.ticket import CommentOut, UserOut
from ticketdesk.services.api_client import TicketApiClient
from ticketdesk.state.intents import AppendComment
from ticketdesk.state.store import TicketStore, temporary_comment_id

logger = logging.getLogger(__name__)


def _max_attachments() -> int:
    return get_settings().max_attachments_per_reply


class ReplyFile(BaseModel):
    filename: str
    content: bytes
    mimeType: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)

    def as_upload(self) -> tuple[str, bytes, str]:
        return self.filename, self.content, self.mimeType


class ReplyResult(BaseModel):
    ok: bool
    comment: Optional[CommentOut] = None
    error: Optional[OperationError] = None
    attachmentIds: list[int] = Field(default_factory=list)


def validate_reply(text: str, files: list[ReplyFile]) -> None:
    if not text.strip() and not files:
        raise ValidationError("Write a message or attach at least one file before sending.")
    limit = _max_attachments()
    if len(files) > limit:
        raise ValidationError(
            f"Too many files. Maximum {limit} files allowed per reply.",
            details={"fileCount": len(files), "limit": limit},
        )


def optimistic_comment(
    text: str,
    *,
    is_internal_note: bool,
    send_as_email: bool,
    commenter: Optional[UserOut] = None,
) -> CommentOut:
    """Placeholder shown until the server returns the real comment. Its id is never sent anywhere."""
    return CommentOut(
        id=temporary_comment_id(),
        commentText=text or None,
        createdAt=datetime.now(timezone.utc),
        commenter=commenter,
        isInternalNote=is_internal_note,
        isFromCustomer=False,
        isOutgoingReply=send_as_email,
    )


async def submit_reply(
    client: TicketApiClient,
    ticket_id: int,
    text: str,
    is_internal_note: bool,
    send_as_email: bool,
    files: list[ReplyFile],
    *,
    store: Optional[TicketStore] = None,
    commenter: Optional[UserOut] = None,
    uploaded_ids: Optional[list[int]] = None,
) -> ReplyResult:
    """
    Two-phase write. All files go up in one batched request first; if that fails, or the server
    does not account for every file, no comment is created. Then the comment is created with the
    returned attachment ids. With a store, the reply shows up optimistically and the ticket is
    reconciled (or rolled back) afterwards.

    ``uploaded_ids`` are the attachment ids of an earlier attempt whose comment phase failed;
    when given for the same files they are reused instead of uploading again.
    """
    try:
        validate_reply(text, files)
    except ValidationError as e:
        return ReplyResult(ok=False, error=e.to_payload())
    if is_internal_note:
        send_as_email = False

    if store is not None and store.ticket_id != ticket_id:
        store = None
    seq: Optional[int] = None
    token = store.session_token if store is not None else None
    if store is not None:
        try:
            seq = store.apply_optimistic(
                AppendComment(
                    comment=optimistic_comment(
                        text,
                        is_internal_note=is_internal_note,
                        send_as_email=send_as_email,
                        commenter=commenter,
                    )
                )
            )
        except (StaleResponseError, ValidationError) as e:
            logger.debug("Skipping optimistic reply for ticket #%s: %s", ticket_id, e)
            store = None

    attachment_ids: list[int] = []
    if files and uploaded_ids and len(uploaded_ids) == len(files):
        attachment_ids = list(uploaded_ids)
    elif files:
        try:
            uploaded = await client.upload_attachments(ticket_id, [f.as_upload() for f in files])
        except ApiError as e:
            logger.warning("Attachment upload for ticket #%s failed: %s", ticket_id, e.message)
            await _rollback(store, token, seq)
            error = UploadError(
                e.user_message("Failed to upload attachments."),
                details={"statusCode": e.status_code, "fileCount": len(files)},
            )
            return ReplyResult(ok=False, error=error.to_payload())
        if len(uploaded) != len(files):
            logger.warning(
                "Upload for ticket #%s stored %s of %s file(s)", ticket_id, len(uploaded), len(files)
            )
            await _rollback(store, token, seq)
            error = UploadError(
                f"Only {len(uploaded)} of {len(files)} attachments were uploaded. Please try again.",
                details={"fileCount": len(files), "uploadedCount": len(uploaded)},
            )
            return ReplyResult(ok=False, error=error.to_payload())
        attachment_ids = [a.id for a in uploaded]

    try:
        comment = await client.create_reply(
            ticket_id,
            content=text,
            is_internal_note=is_internal_note,
            send_as_email=send_as_email,
            attachment_ids=attachment_ids,
        )
    except ApiError as e:
        logger.warning("Reply for ticket #%s failed: %s", ticket_id, e.message)
        await _rollback(store, token, seq)
        error = WriteError(
            e.user_message("Could not post comment. Please try again."),
            details={"statusCode": e.status_code, "attachmentIds": attachment_ids},
        )
        return ReplyResult(ok=False, error=error.to_payload(), attachmentIds=attachment_ids)

    logger.info("Reply %s added to ticket #%s (%s attachment(s))", comment.id, ticket_id, len(attachment_ids))
    if store is not None and store.is_current(token):
        store.confirm_comment(seq, comment)
        try:
            await store.refresh()
        except ApiError as e:
            logger.warning("Refresh after reply on ticket #%s failed: %s", ticket_id, e.message)
    return ReplyResult(ok=True, comment=comment, attachmentIds=attachment_ids)


async def _rollback(store: Optional[TicketStore], token, seq: Optional[int]) -> None:
    if store is None or seq is None:
        return
    if not store.is_current(token):
        logger.debug("Reply failure for ticket #%s arrived after the store moved on", token[0])
        return
    await store.rollback(seq)


class ComposeForm:
    """Reply box state. Internal note and send-as-email are mutually exclusive."""

    def __init__(self) -> None:
        self.text = ""
        self.is_internal_note = False
        self.send_as_email = True
        self.files: list[ReplyFile] = []
        # Ids of files already uploaded for a reply whose comment failed
        self.uploaded_attachment_ids: list[int] = []

    def set_internal_note(self, value: bool) -> None:
        self.is_internal_note = value
        if value:
            self.send_as_email = False

    def set_send_as_email(self, value: bool) -> None:
        self.send_as_email = value
        if value:
            self.is_internal_note = False

    def add_file(self, file: ReplyFile) -> None:
        self.add_files([file])

    def add_files(self, files: list[ReplyFile]) -> None:
        """All or nothing: exceeding the limit adds none of ``files``."""
        limit = _max_attachments()
        if len(self.files) + len(files) > limit:
            raise ValidationError(
                f"Too many files. Maximum {limit} files allowed per reply.",
                details={"fileCount": len(self.files) + len(files), "limit": limit},
            )
        self.files.extend(files)
        self.uploaded_attachment_ids = []

    def remove_file(self, index: int) -> None:
        """Remove by position; several files may share a name."""
        del self.files[index]
        self.uploaded_attachment_ids = []

    def use_suggestion(self, suggestion: str) -> None:
        """Move an AI suggested reply into the box as a customer email draft for review."""
        self.text = suggestion
        self.set_send_as_email(True)

    def clear(self) -> None:
        self.text = ""
        self.is_internal_note = False
        self.send_as_email = True
        self.files = []
        self.uploaded_attachment_ids = []

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.files


class ReplyComposer:
    """Binds a ComposeForm to one ticket's store. The form is cleared only after a successful send."""

    def __init__(
        self,
        client: TicketApiClient,
        store: TicketStore,
        *,
        commenter: Optional[UserOut] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.commenter = commenter
        self.form = ComposeForm()
        self.is_submitting = False

    async def submit(self) -> ReplyResult:
        if self.is_submitting:
            return ReplyResult(
                ok=False,
                error=OperationError(kind="validation", message="A reply is already being sent."),
            )
        self.is_submitting = True
        form = self.form
        sent = (form.text, form.is_internal_note, form.send_as_email, list(form.files))
        try:
            result = await submit_reply(
                self.client,
                self.store.ticket_id,
                form.text,
                form.is_internal_note,
                form.send_as_email,
                sent[3],
                store=self.store,
                commenter=self.commenter,
                uploaded_ids=form.uploaded_attachment_ids or None,
            )
        finally:
            self.is_submitting = False
        same_files = sent[3] == form.files
        if result.ok:
            if same_files and sent == (form.text, form.is_internal_note, form.send_as_email, form.files):
                form.clear()
            else:
                # Edited while sending: keep what the agent added, drop what was posted
                if form.text == sent[0]:
                    form.text = ""
                form.files = [f for f in form.files if not any(f is s for s in sent[3])]
                form.uploaded_attachment_ids = []
        elif result.attachmentIds and same_files:
            form.uploaded_attachment_ids = list(result.attachmentIds)
        return result

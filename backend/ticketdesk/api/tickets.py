"""Tickets API."""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from ticketdesk.config import get_settings
from ticketdesk.deps import get_db
from ticketdesk.schemas.ticket import (
    AttachmentOut,
    AttachmentUploadOut,
    CommentOut,
    MergedTicketOut,
    MergeIn,
    MergeOut,
    MergeSourceResult,
    ReplyIn,
    TicketCreateIn,
    TicketOut,
    TicketStatus,
    TicketSummaryOut,
    TicketUpdateIn,
    UserOut,
)
from ticketdesk.storage.repositories import (
    attachments_create,
    attachments_unclaimed,
    comment_create,
    ticket_create,
    ticket_get,
    ticket_list,
    ticket_touch,
    ticket_update,
    tickets_get_many,
    tickets_mark_merged,
    user_get,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tickets", tags=["tickets"])

ATTACHMENTS_ONLY_TEXT = "(Attachments only)"


def _user_out(u):
    if u is None:
        return None
    return UserOut(id=u.id, name=u.name, email=u.email)


def _attachment_out(a):
    return AttachmentOut(
        id=a.id,
        originalFilename=a.original_filename,
        fileSize=a.file_size,
        mimeType=a.mime_type,
        uploadedAt=a.uploaded_at,
        commentId=a.comment_id,
        ticketId=a.ticket_id,
    )


def _comment_out(c):
    return CommentOut(
        id=c.id,
        commentText=c.comment_text,
        createdAt=c.created_at,
        commenter=_user_out(c.commenter),
        isInternalNote=c.is_internal_note,
        isFromCustomer=c.is_from_customer,
        isOutgoingReply=c.is_outgoing_reply,
        attachments=[_attachment_out(a) for a in c.attachments],
        externalMessageId=c.external_message_id,
    )


def _ticket_out(t):
    return TicketOut(
        id=t.id,
        title=t.title,
        description=t.description,
        status=t.status,
        priority=t.priority,
        type=t.type,
        assignee=_user_out(t.assignee),
        reporter=_user_out(t.reporter),
        senderName=t.sender_name,
        senderEmail=t.sender_email,
        senderPhone=t.sender_phone,
        orderNumber=t.order_number,
        trackingNumber=t.tracking_number,
        createdAt=t.created_at,
        updatedAt=t.updated_at,
        comments=[_comment_out(c) for c in t.comments],
        attachments=[_attachment_out(a) for a in t.attachments],
        mergedIntoTicketId=t.merged_into_ticket_id,
        mergedTickets=[
            MergedTicketOut(id=m.id, title=m.title, status=m.status, mergedAt=m.merged_at)
            for m in t.merged_tickets
        ],
    )


def _summary_out(t):
    return TicketSummaryOut(
        id=t.id,
        title=t.title,
        status=t.status,
        priority=t.priority,
        senderEmail=t.sender_email,
        assigneeId=t.assignee_id,
        mergedIntoTicketId=t.merged_into_ticket_id,
        createdAt=t.created_at,
        updatedAt=t.updated_at,
    )


async def _get_or_404(session: AsyncSession, ticket_id: int):
    t = await ticket_get(session, ticket_id)
    if not t:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return t


@router.get("", response_model=list[TicketSummaryOut])
async def list_tickets(
    status: TicketStatus | None = None,
    session: AsyncSession = Depends(get_db),
):
    tickets = await ticket_list(session, status=status.value if status else None)
    return [_summary_out(t) for t in tickets]


@router.post("", response_model=TicketOut, status_code=201)
async def create_ticket(body: TicketCreateIn, session: AsyncSession = Depends(get_db)):
    if body.reporterId and not await user_get(session, body.reporterId):
        raise HTTPException(status_code=404, detail="Reporter not found")
    t = await ticket_create(
        session,
        title=body.title,
        description=body.description,
        priority=body.priority.value,
        type=body.type,
        reporter_id=body.reporterId,
        sender_name=body.senderName,
        sender_email=body.senderEmail,
        sender_phone=body.senderPhone,
        order_number=body.orderNumber,
        tracking_number=body.trackingNumber,
    )
    out = _ticket_out(await ticket_get(session, t.id))
    await session.commit()
    return out


@router.get("/{ticket_id}", response_model=TicketOut)
async def get_ticket(ticket_id: int, session: AsyncSession = Depends(get_db)):
    return _ticket_out(await _get_or_404(session, ticket_id))


@router.put("/{ticket_id}", response_model=TicketOut)
async def update_ticket(
    ticket_id: int,
    body: TicketUpdateIn,
    session: AsyncSession = Depends(get_db),
):
    """Partial update of status, priority and assignee. Absent fields are left alone."""
    t = await _get_or_404(session, ticket_id)
    sent = body.model_fields_set
    values = {}
    if "status" in sent:
        if body.status is None:
            raise HTTPException(status_code=400, detail="Status cannot be empty")
        values["status"] = body.status.value
    if "priority" in sent:
        if body.priority is None:
            raise HTTPException(status_code=400, detail="Priority cannot be empty")
        values["priority"] = body.priority.value
    if "assigneeId" in sent:
        if body.assigneeId is not None and not await user_get(session, body.assigneeId):
            raise HTTPException(status_code=404, detail="Assignee not found")
        values["assignee_id"] = body.assigneeId
    if t.merged_into_ticket_id is not None and ("status" in values or "assignee_id" in values):
        raise HTTPException(
            status_code=409,
            detail=f"Ticket #{ticket_id} was merged into #{t.merged_into_ticket_id} and can no longer be changed.",
        )
    if not values:
        return _ticket_out(t)
    out = _ticket_out(await ticket_update(session, ticket_id, **values))
    await session.commit()
    return out


@router.post("/{ticket_id}/attachments", response_model=AttachmentUploadOut)
async def upload_attachments(
    ticket_id: int,
    files: list[UploadFile] = File(...),
    session: AsyncSession = Depends(get_db),
):
    """Register a batch of files on the ticket. Bytes go to external file storage; only metadata is kept."""
    settings = get_settings()
    await _get_or_404(session, ticket_id)
    if not files:
        raise HTTPException(status_code=400, detail="No files provided.")
    if len(files) > settings.max_attachments_per_reply:
        raise HTTPException(
            status_code=400,
            detail=f"Too many files. Maximum {settings.max_attachments_per_reply} files allowed per upload.",
        )
    limit_mb = settings.max_attachment_bytes / (1024 * 1024)
    records = []
    total = 0
    for f in files:
        content = await f.read()
        name = f.filename or "attachment"
        if len(content) > settings.max_attachment_bytes:
            raise HTTPException(status_code=413, detail=f'File "{name}" exceeds the {limit_mb:g} MB limit.')
        total += len(content)
        records.append((name, len(content), f.content_type or "application/octet-stream"))
    if total > settings.max_attachment_bytes:
        raise HTTPException(status_code=413, detail=f"Total upload size exceeds the {limit_mb:g} MB limit.")
    created = await attachments_create(session, ticket_id, records)
    out = AttachmentUploadOut(attachments=[_attachment_out(a) for a in created])
    await session.commit()
    logger.info("Stored %s attachment(s) for ticket #%s", len(created), ticket_id)
    return out


@router.post("/{ticket_id}/reply", response_model=CommentOut, status_code=201)
async def create_reply(ticket_id: int, body: ReplyIn, session: AsyncSession = Depends(get_db)):
    """Add an agent reply or internal note, claiming previously uploaded attachments."""
    t = await _get_or_404(session, ticket_id)
    has_text = bool(body.content.strip())
    if not has_text and not body.attachmentIds:
        raise HTTPException(status_code=400, detail="Reply content or attachments are required.")
    attachment_ids = list(dict.fromkeys(body.attachmentIds))
    claimable = await attachments_unclaimed(session, ticket_id, attachment_ids)
    unknown = [i for i in attachment_ids if i not in claimable]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Attachment(s) {', '.join(map(str, unknown))} not found on this ticket or already used.",
        )
    # Internal notes never go out as email
    send_as_email = body.sendAsEmail and not body.isInternalNote
    c = await comment_create(
        session,
        ticket_id,
        comment_text=body.content if has_text else ATTACHMENTS_ONLY_TEXT,
        is_internal_note=body.isInternalNote,
        is_outgoing_reply=send_as_email,
        attachment_ids=attachment_ids,
    )
    if send_as_email and t.status != TicketStatus.CLOSED.value:
        await ticket_update(session, ticket_id, status=TicketStatus.PENDING_CUSTOMER.value)
    else:
        await ticket_touch(session, ticket_id)
    out = _comment_out(c)
    await session.commit()
    logger.info("Comment %s added to ticket #%s (email=%s)", c.id, ticket_id, send_as_email)
    return out


@router.post("/{ticket_id}/merge", response_model=MergeOut)
async def merge_tickets(ticket_id: int, body: MergeIn, session: AsyncSession = Depends(get_db)):
    """Fold the source tickets into this one. All or nothing; every rejected source gets a reason."""
    sources = list(dict.fromkeys(body.sourceTicketIds))
    if ticket_id in sources:
        raise HTTPException(status_code=400, detail="A ticket cannot be merged into itself.")
    primary = await _get_or_404(session, ticket_id)
    if primary.merged_into_ticket_id is not None:
        raise HTTPException(
            status_code=409,
            detail=f"Primary ticket #{ticket_id} is not a valid merge target; "
            f"it was merged into #{primary.merged_into_ticket_id}.",
        )

    found = {t.id: t for t in await tickets_get_many(session, sources)}
    rejected = {}
    for sid in sources:
        s = found.get(sid)
        if s is None:
            rejected[sid] = "Ticket not found."
        elif s.merged_into_ticket_id is not None:
            rejected[sid] = f"Ticket #{sid} has already been merged into #{s.merged_into_ticket_id}."
    if rejected:
        results = [
            MergeSourceResult(
                ticketId=sid,
                merged=False,
                error=rejected.get(sid, "Not merged because another ticket in the request was rejected."),
            )
            for sid in sources
        ]
        raise HTTPException(
            status_code=409,
            detail={
                "message": " ".join(rejected.values()),
                "results": [r.model_dump() for r in results],
            },
        )

    for sid in sources:
        s = found[sid]
        await comment_create(
            session,
            ticket_id,
            comment_text=f'**System Note:** Merged ticket #{s.id} ("{s.title}") into this ticket.',
            is_internal_note=True,
        )
    await tickets_mark_merged(session, ticket_id, sources)
    await ticket_touch(session, ticket_id)
    await session.commit()
    logger.info("Merged tickets %s into #%s", sources, ticket_id)
    return MergeOut(
        primaryTicketId=ticket_id,
        message=f"Successfully merged {len(sources)} ticket(s) into ticket #{ticket_id}.",
        results=[MergeSourceResult(ticketId=sid, merged=True) for sid in sources],
    )

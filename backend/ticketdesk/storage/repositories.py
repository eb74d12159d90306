"""Repositories for users, tickets, comments and attachments."""
import uuid
from pathlib import PurePath
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ticketdesk.storage.models import AttachmentModel, CommentModel, TicketModel, UserModel, utcnow


# ---------- Users ----------
async def user_list(session: AsyncSession) -> list[UserModel]:
    r = await session.execute(select(UserModel).order_by(UserModel.name, UserModel.email))
    return list(r.scalars().all())


async def user_get(session: AsyncSession, id: str) -> Optional[UserModel]:
    r = await session.execute(select(UserModel).where(UserModel.id == id))
    return r.scalar_one_or_none()


async def user_create(session: AsyncSession, *, name: Optional[str] = None, email: Optional[str] = None) -> UserModel:
    u = UserModel(name=name, email=email)
    session.add(u)
    await session.flush()
    return u


# ---------- Tickets ----------
def _ticket_detail_options():
    return (
        selectinload(TicketModel.assignee),
        selectinload(TicketModel.reporter),
        selectinload(TicketModel.comments).selectinload(CommentModel.commenter),
        selectinload(TicketModel.comments).selectinload(CommentModel.attachments),
        selectinload(TicketModel.attachments),
        selectinload(TicketModel.merged_tickets),
    )


async def ticket_list(session: AsyncSession, status: Optional[str] = None) -> list[TicketModel]:
    q = select(TicketModel).order_by(TicketModel.updated_at.desc(), TicketModel.id.desc())
    if status:
        q = q.where(TicketModel.status == status)
    r = await session.execute(q)
    return list(r.scalars().all())


async def ticket_get(session: AsyncSession, id: int) -> Optional[TicketModel]:
    """Ticket with comments, attachments, people and merged tickets loaded (fresh from the DB)."""
    r = await session.execute(
        select(TicketModel)
        .where(TicketModel.id == id)
        .options(*_ticket_detail_options())
        .execution_options(populate_existing=True)
    )
    return r.scalar_one_or_none()


async def tickets_get_many(session: AsyncSession, ids: list[int]) -> list[TicketModel]:
    r = await session.execute(select(TicketModel).where(TicketModel.id.in_(ids)))
    return list(r.scalars().all())


async def ticket_create(session: AsyncSession, **fields: Any) -> TicketModel:
    t = TicketModel(**fields)
    session.add(t)
    await session.flush()
    return t


async def ticket_update(session: AsyncSession, id: int, **values: Any) -> Optional[TicketModel]:
    """Set only the given columns; always touches updated_at."""
    values["updated_at"] = utcnow()
    await session.execute(update(TicketModel).where(TicketModel.id == id).values(**values))
    await session.flush()
    return await ticket_get(session, id)


async def ticket_touch(session: AsyncSession, id: int) -> None:
    await session.execute(update(TicketModel).where(TicketModel.id == id).values(updated_at=utcnow()))
    await session.flush()


# ---------- Attachments ----------
async def attachments_create(
    session: AsyncSession,
    ticket_id: int,
    files: list[tuple[str, int, str]],
) -> list[AttachmentModel]:
    """Record uploaded files (original filename, size, mime type) as ticket-level attachments."""
    created = []
    for original_filename, size, mime_type in files:
        a = AttachmentModel(
            ticket_id=ticket_id,
            filename=f"{uuid.uuid4().hex}{PurePath(original_filename).suffix}",
            original_filename=original_filename,
            file_size=size,
            mime_type=mime_type or "application/octet-stream",
        )
        session.add(a)
        created.append(a)
    await session.flush()
    return created


async def attachments_unclaimed(session: AsyncSession, ticket_id: int, ids: list[int]) -> list[int]:
    """Ids among ``ids`` that belong to the ticket and are not yet bound to a comment."""
    if not ids:
        return []
    r = await session.execute(
        select(AttachmentModel.id).where(
            AttachmentModel.ticket_id == ticket_id,
            AttachmentModel.comment_id.is_(None),
            AttachmentModel.id.in_(ids),
        )
    )
    return list(r.scalars().all())


# ---------- Comments ----------
async def comment_create(
    session: AsyncSession,
    ticket_id: int,
    *,
    comment_text: Optional[str],
    commenter_id: Optional[str] = None,
    is_internal_note: bool = False,
    is_from_customer: bool = False,
    is_outgoing_reply: bool = False,
    external_message_id: Optional[str] = None,
    attachment_ids: Optional[list[int]] = None,
) -> CommentModel:
    """Insert a comment and claim the given unbound attachments of the same ticket."""
    c = CommentModel(
        ticket_id=ticket_id,
        comment_text=comment_text,
        commenter_id=commenter_id,
        is_internal_note=is_internal_note,
        is_from_customer=is_from_customer,
        is_outgoing_reply=is_outgoing_reply,
        external_message_id=external_message_id,
    )
    session.add(c)
    await session.flush()
    if attachment_ids:
        await session.execute(
            update(AttachmentModel)
            .where(
                AttachmentModel.ticket_id == ticket_id,
                AttachmentModel.comment_id.is_(None),
                AttachmentModel.id.in_(attachment_ids),
            )
            .values(comment_id=c.id)
        )
        await session.flush()
    return await comment_get(session, c.id)


async def comment_get(session: AsyncSession, id: int) -> Optional[CommentModel]:
    r = await session.execute(
        select(CommentModel)
        .where(CommentModel.id == id)
        .options(selectinload(CommentModel.commenter), selectinload(CommentModel.attachments))
        .execution_options(populate_existing=True)
    )
    return r.scalar_one_or_none()


# ---------- Merge ----------
async def tickets_mark_merged(session: AsyncSession, primary_id: int, source_ids: list[int]) -> None:
    """Close the sources and point them at the primary. Validation is the caller's job."""
    now = utcnow()
    await session.execute(
        update(TicketModel)
        .where(TicketModel.id.in_(source_ids))
        .values(status="closed", merged_into_ticket_id=primary_id, merged_at=now, updated_at=now)
    )
    await session.flush()

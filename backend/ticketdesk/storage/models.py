"""SQLAlchemy models for users, tickets, comments and attachments."""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ticketdesk.storage.db import Base


def gen_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserModel(Base):
    """Agent directory entry. Read-only as far as the ticket API is concerned."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AttachmentModel(Base):
    __tablename__ = "ticket_attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tickets.id"), nullable=True, index=True)
    # Set once when a reply claims the upload; never moved afterwards
    comment_id: Mapped[Optional[int]] = mapped_column(ForeignKey("ticket_comments.id"), nullable=True, index=True)
    filename: Mapped[str] = mapped_column(String(512), nullable=False)  # storage key
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), default="application/octet-stream")
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CommentModel(Base):
    __tablename__ = "ticket_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey("tickets.id"), nullable=False, index=True)
    comment_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    commenter_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    is_internal_note: Mapped[bool] = mapped_column(Boolean, default=False)
    is_from_customer: Mapped[bool] = mapped_column(Boolean, default=False)
    is_outgoing_reply: Mapped[bool] = mapped_column(Boolean, default=False)
    external_message_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    commenter: Mapped[Optional["UserModel"]] = relationship("UserModel")
    attachments: Mapped[list["AttachmentModel"]] = relationship("AttachmentModel", order_by=AttachmentModel.id)


class TicketModel(Base):
    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="new", index=True)  # new, open, in_progress, pending_customer, closed
    priority: Mapped[str] = mapped_column(String(16), default="medium")  # low, medium, high, urgent
    type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    reporter_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sender_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True, index=True)
    sender_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    external_message_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    merged_into_ticket_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tickets.id"), nullable=True, index=True)
    merged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    assignee: Mapped[Optional["UserModel"]] = relationship("UserModel", foreign_keys=[assignee_id])
    reporter: Mapped[Optional["UserModel"]] = relationship("UserModel", foreign_keys=[reporter_id])
    comments: Mapped[list["CommentModel"]] = relationship(
        "CommentModel", order_by=[CommentModel.created_at, CommentModel.id]
    )
    attachments: Mapped[list["AttachmentModel"]] = relationship("AttachmentModel", order_by=AttachmentModel.id)
    # Tickets absorbed into this one
    merged_tickets: Mapped[list["TicketModel"]] = relationship("TicketModel", order_by="TicketModel.merged_at")

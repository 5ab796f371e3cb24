"""Ticketing and email-sync ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Enum, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ticketmail.db.base import Base
from ticketmail.db.enums import (
    DEFAULT_TICKET_PRIORITY,
    DEFAULT_TICKET_STATUS,
    SyncRunStatus,
    TicketPriority,
    TicketStatus,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Store str-enums by value, portable across database backends."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Ticket(Base):
    """Support ticket, optionally created from an inbound email."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_status", "status"),
        Index("idx_tickets_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    # Dedup key for email-sourced tickets; NULL for tickets created by hand.
    email_message_id: Mapped[str | None] = mapped_column(
        String(998), nullable=True, unique=True
    )
    status: Mapped[TicketStatus] = mapped_column(
        _enum_type(TicketStatus, name="ticket_status"),
        nullable=False,
        default=DEFAULT_TICKET_STATUS,
    )
    priority: Mapped[TicketPriority] = mapped_column(
        _enum_type(TicketPriority, name="ticket_priority"),
        nullable=False,
        default=DEFAULT_TICKET_PRIORITY,
    )
    created_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=_now_utc, onupdate=_now_utc, nullable=False
    )


class EmailSyncRun(Base):
    """Run record for one mailbox ingestion attempt."""

    __tablename__ = "email_sync_runs"
    __table_args__ = (Index("idx_email_sync_runs_started", "started_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    status: Mapped[SyncRunStatus] = mapped_column(
        _enum_type(SyncRunStatus, name="email_sync_status"),
        nullable=False,
        default=SyncRunStatus.RUNNING,
    )
    started_at: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    messages_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tickets_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

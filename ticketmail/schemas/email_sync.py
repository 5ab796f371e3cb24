"""Pydantic schemas for the email sync trigger and run history."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticketmail.db.enums import SyncRunStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmailSyncResponse(_CamelModel):
    """Successful run: ``{success, messagesProcessed, ticketsCreated, message}``."""

    success: bool = True
    messages_processed: int
    tickets_created: int
    message: str


class EmailSyncFailure(_CamelModel):
    success: bool = False
    error: str


class SyncRunRead(_CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: UUID
    status: SyncRunStatus
    started_at: datetime
    completed_at: datetime | None = None
    messages_processed: int
    tickets_created: int
    error_message: str | None = None


class MailboxMessageRead(_CamelModel):
    id: str
    message_id: str
    sender: str = Field(alias="from")
    to: str
    subject: str
    date: str | None = None
    is_unread: bool
    body: str


class MailboxListResponse(_CamelModel):
    """Listing: ``{success, count, emails: [{id, from, to, subject, date, isUnread, body}]}``."""

    success: bool = True
    count: int
    emails: list[MailboxMessageRead]

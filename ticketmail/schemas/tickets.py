"""Pydantic schemas for tickets and completion notifications."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticketmail.db.enums import (
    DEFAULT_TICKET_PRIORITY,
    DEFAULT_TICKET_STATUS,
    TicketPriority,
    TicketStatus,
)


class TicketCreate(BaseModel):
    """Ticket fields accepted by the store."""

    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    email: str = Field(min_length=1, max_length=320)
    email_message_id: str | None = None
    status: TicketStatus = DEFAULT_TICKET_STATUS
    priority: TicketPriority = DEFAULT_TICKET_PRIORITY


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str
    email: str
    email_message_id: str | None = None
    status: TicketStatus
    priority: TicketPriority
    created_at: datetime
    updated_at: datetime


class TicketStatusUpdate(BaseModel):
    status: TicketStatus


class TicketNotificationRequest(BaseModel):
    """Payload sent by the ticket-update path when a ticket becomes DONE."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ticket_id: UUID


class TicketNotificationResponse(BaseModel):
    success: bool
    message: str

"""Ticket persistence used by the ingestion run and the status call site.

Each operation is its own single-row transaction.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticketmail.db.enums import TicketStatus
from ticketmail.db.models import Ticket
from ticketmail.schemas.tickets import TicketCreate

logger = logging.getLogger(__name__)


class TicketStoreError(Exception):
    """Base exception for ticket store errors."""

    pass


class TicketNotFoundError(TicketStoreError):
    """Ticket not found."""

    pass


class DuplicateTicketError(TicketStoreError):
    """A ticket already exists for the source message id."""

    pass


def exists_by_source_message_id(db: Session, message_id: str) -> bool:
    """Return True when a ticket was already created from this message."""
    stmt = select(Ticket.id).where(Ticket.email_message_id == message_id).limit(1)
    return db.execute(stmt).first() is not None


def create_ticket(db: Session, data: TicketCreate) -> Ticket:
    """Insert a ticket.

    Raises:
        DuplicateTicketError: another writer inserted the same source message id.
    """
    ticket = Ticket(
        title=data.title,
        description=data.description,
        email=data.email,
        email_message_id=data.email_message_id,
        status=data.status,
        priority=data.priority,
    )
    db.add(ticket)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateTicketError(
            f"Ticket already exists for message {data.email_message_id}"
        ) from exc
    db.refresh(ticket)
    return ticket


def get_ticket(db: Session, ticket_id: UUID) -> Ticket | None:
    return db.get(Ticket, ticket_id)


def update_status(db: Session, ticket_id: UUID, status: TicketStatus) -> Ticket:
    """Set a ticket's status.

    Raises:
        TicketNotFoundError: no ticket with this id.
    """
    ticket = db.get(Ticket, ticket_id)
    if not ticket:
        raise TicketNotFoundError(f"Ticket {ticket_id} not found")
    ticket.status = status
    db.commit()
    db.refresh(ticket)
    return ticket

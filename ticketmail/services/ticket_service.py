"""Ticket status transitions (the call site for completion notices)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from ticketmail.db.enums import TicketStatus
from ticketmail.db.models import Ticket
from ticketmail.services import ticket_notification_service, ticket_store
from ticketmail.services.mail_config import SubmissionConfig

logger = logging.getLogger(__name__)


def update_ticket_status(
    db: Session,
    ticket_id: UUID,
    status: TicketStatus,
    *,
    submission_config: SubmissionConfig | None = None,
) -> Ticket:
    """Update status; a transition into DONE triggers the completion notice.

    Notification failures are logged by the dispatcher and never affect the
    stored status.

    Raises:
        TicketNotFoundError: no ticket with this id.
    """
    existing = ticket_store.get_ticket(db, ticket_id)
    if existing is None:
        raise ticket_store.TicketNotFoundError(f"Ticket {ticket_id} not found")
    previous = existing.status

    ticket = ticket_store.update_status(db, ticket_id, status)

    if status == TicketStatus.DONE and previous != TicketStatus.DONE:
        ticket_notification_service.notify_ticket_completed(
            ticket,
            submission_config=submission_config,
            completed_at=datetime.now(timezone.utc),
        )
    return ticket

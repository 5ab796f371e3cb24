"""Ticket status updates and completion-notice trigger."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ticketmail.core.deps import get_db
from ticketmail.db.enums import TicketStatus
from ticketmail.schemas.tickets import (
    TicketNotificationRequest,
    TicketNotificationResponse,
    TicketRead,
    TicketStatusUpdate,
)
from ticketmail.services import ticket_notification_service, ticket_service, ticket_store
from ticketmail.services.mime_extractor import extract_email_address

router = APIRouter(tags=["tickets"])


@router.get("/tickets/{ticket_id}", response_model=TicketRead)
def get_ticket(ticket_id: UUID, db: Session = Depends(get_db)) -> TicketRead:
    ticket = ticket_store.get_ticket(db, ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return TicketRead.model_validate(ticket)


@router.patch("/tickets/{ticket_id}/status", response_model=TicketRead)
def update_ticket_status(
    ticket_id: UUID,
    body: TicketStatusUpdate,
    db: Session = Depends(get_db),
) -> TicketRead:
    """Update ticket status; moving to DONE sends the completion notice."""
    try:
        ticket = ticket_service.update_ticket_status(db, ticket_id, body.status)
    except ticket_store.TicketNotFoundError:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return TicketRead.model_validate(ticket)


@router.post(
    "/notifications/ticket-completed",
    response_model=TicketNotificationResponse,
    responses={500: {"model": TicketNotificationResponse}},
)
def send_ticket_completed_notification(
    body: TicketNotificationRequest,
    db: Session = Depends(get_db),
):
    """
    Send the completion notice for a ticket that is already DONE.

    A send failure is reported as a 500 with ``success: false``.
    """
    ticket = ticket_store.get_ticket(db, body.ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    if ticket.status != TicketStatus.DONE:
        return TicketNotificationResponse(
            success=False,
            message="Email notification only sent for DONE tickets",
        )
    sent = ticket_notification_service.notify_ticket_completed(ticket)
    if not sent:
        failure = TicketNotificationResponse(
            success=False, message="Failed to send email notification"
        )
        return JSONResponse(status_code=500, content=failure.model_dump(by_alias=True))
    recipient = extract_email_address(ticket.email)
    return TicketNotificationResponse(
        success=True, message=f"Email notification sent to {recipient}"
    )

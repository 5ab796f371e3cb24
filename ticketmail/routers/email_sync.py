"""Email sync trigger and run history."""

import logging
from datetime import date
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ticketmail.core.deps import get_db
from ticketmail.core.rate_limit import EMAIL_SYNC_LIMIT, limiter
from ticketmail.schemas.email_sync import (
    EmailSyncFailure,
    EmailSyncResponse,
    MailboxListResponse,
    MailboxMessageRead,
    SyncRunRead,
)
from ticketmail.services import email_sync_service, mailbox_listing_service, sync_run_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/email-sync", tags=["email-sync"])


@router.post("", response_model=EmailSyncResponse, responses={500: {"model": EmailSyncFailure}})
@limiter.limit(EMAIL_SYNC_LIMIT)
def trigger_email_sync(request: Request, db: Session = Depends(get_db)):
    """
    Run one mailbox ingestion pass synchronously.

    Returns counts on success; on failure the run is recorded as FAILED
    and a 500 with the error text is returned.
    """
    try:
        result = email_sync_service.run_email_sync(db)
    except Exception as exc:
        logger.warning("Email sync request failed: %s", exc)
        failure = EmailSyncFailure(error=str(exc) or "Email sync failed")
        return JSONResponse(status_code=500, content=failure.model_dump(by_alias=True))
    return EmailSyncResponse(
        messages_processed=result.messages_processed,
        tickets_created=result.tickets_created,
        message=result.message,
    )


@router.get("/runs", response_model=list[SyncRunRead])
def list_sync_runs(
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    db: Session = Depends(get_db),
) -> list[SyncRunRead]:
    """Recent sync runs, newest first."""
    runs = sync_run_store.list_recent_runs(db, limit=limit)
    return [SyncRunRead.model_validate(run) for run in runs]


@router.get(
    "/messages",
    response_model=MailboxListResponse,
    responses={500: {"model": EmailSyncFailure}},
)
def list_mailbox_messages(
    filter_by: Literal["all", "today", "date_range"] = "today",
    start_date: date | None = None,
    end_date: date | None = None,
    mark_as_read: bool = False,
    ticket_only: bool = False,
    limit: Annotated[
        int, Query(ge=1, le=mailbox_listing_service.MAX_LIST_LIMIT)
    ] = mailbox_listing_service.DEFAULT_LIST_LIMIT,
):
    """
    List unread mailbox messages, newest first, without creating tickets.

    ``filter_by=date_range`` needs both ``start_date`` and ``end_date``;
    ``ticket_only`` keeps only subjects carrying the ticket marker.
    """
    try:
        mailbox_listing_service.build_list_criteria(
            filter_by, start_date=start_date, end_date=end_date
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        messages = mailbox_listing_service.list_unread_messages(
            filter_by=filter_by,
            start_date=start_date,
            end_date=end_date,
            mark_as_read=mark_as_read,
            ticket_only=ticket_only,
            limit=limit,
        )
    except Exception as exc:
        logger.warning("Mailbox listing request failed: %s", exc)
        failure = EmailSyncFailure(error=str(exc) or "Mailbox listing failed")
        return JSONResponse(status_code=500, content=failure.model_dump(by_alias=True))

    return MailboxListResponse(
        count=len(messages),
        emails=[
            MailboxMessageRead(
                id=message.sequence,
                message_id=message.message_id,
                sender=message.sender,
                to=message.recipient,
                subject=message.subject,
                date=message.date,
                is_unread=message.is_unread,
                body=message.body,
            )
            for message in messages
        ],
    )

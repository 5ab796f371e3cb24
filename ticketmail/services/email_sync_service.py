"""Mailbox → ticket ingestion run.

One run:
1. Open a RUNNING run record (before any mailbox work).
2. Connect, authenticate, select the mailbox, search unread messages whose
   subject contains the ticket marker.
3. For each candidate, in server order: dedup by source message id, derive
   the title, extract the body, create the ticket, mark the message read.
   Per-message failures are logged and the loop continues.
4. Close the run as COMPLETED with counts.

A failure in step 2 closes the run as FAILED with the error text and is
re-raised to the caller.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from itertools import islice
from uuid import UUID

from sqlalchemy.orm import Session

from ticketmail.core.structured_logging import build_log_context, mask_email
from ticketmail.db.enums import (
    DEFAULT_TICKET_PRIORITY,
    DEFAULT_TICKET_STATUS,
    SyncRunStatus,
)
from ticketmail.schemas.tickets import TicketCreate
from ticketmail.services import sync_run_store, ticket_store
from ticketmail.services.mail_config import MailboxConfig
from ticketmail.services.mailbox_client import (
    FULL_MESSAGE,
    HEADERS_ONLY,
    CandidateMessage,
    MailboxClient,
    MailboxClientFactory,
    SearchCriteria,
    build_candidate,
    open_mailbox,
)
from ticketmail.services.mime_extractor import extract_email_address, extract_message_text

logger = logging.getLogger(__name__)

TICKET_MARKER = "[TICKET]"
FALLBACK_TICKET_TITLE = "Ticket from Email"
UNKNOWN_SENDER = "unknown@invalid"
_TITLE_MAX_CHARS = 500
EMAIL_MAX_CHARS = 320


@dataclass(frozen=True)
class SyncResult:
    run_id: UUID
    status: SyncRunStatus
    messages_processed: int
    tickets_created: int

    @property
    def message(self) -> str:
        return (
            f"Successfully processed {self.messages_processed} emails "
            f"and created {self.tickets_created} tickets"
        )


def derive_ticket_title(subject: str | None, marker: str = TICKET_MARKER) -> str:
    """Strip the leading ticket marker; fall back to a placeholder title."""
    subject = (subject or "").strip()
    if marker:
        subject = re.sub(rf"^{re.escape(marker)}\s*", "", subject)
    title = subject.strip()[:_TITLE_MAX_CHARS].strip()
    return title or FALLBACK_TICKET_TITLE


def requester_address(sender: str | None) -> str:
    """The raw From value, or just its address when the raw value is too long to store."""
    sender = (sender or "").strip()
    if not sender:
        return UNKNOWN_SENDER
    if len(sender) <= EMAIL_MAX_CHARS:
        return sender
    return extract_email_address(sender)[:EMAIL_MAX_CHARS]


def _process_candidate(
    db: Session,
    client: MailboxClient,
    sequence: str,
    config: MailboxConfig,
    run_id: str,
) -> bool:
    """Turn one mailbox message into a ticket. Returns True when a ticket was created.

    Never raises; a failing message is logged and left unread for the next run.
    """
    context = build_log_context(run_id=run_id, sequence=sequence)
    candidate: CandidateMessage | None = None
    try:
        candidate = build_candidate(client.fetch(sequence, HEADERS_ONLY))
        context = build_log_context(
            run_id=run_id, sequence=sequence, message_id=candidate.message_id
        )

        if ticket_store.exists_by_source_message_id(db, candidate.message_id):
            logger.info("Ticket already exists for message, skipping", extra=context)
            client.mark_read(sequence)
            return False

        full = client.fetch(sequence, FULL_MESSAGE)
        description = extract_message_text(full.raw or b"")
        ticket = ticket_store.create_ticket(
            db,
            TicketCreate(
                title=derive_ticket_title(candidate.subject, config.ticket_marker),
                description=description,
                email=requester_address(candidate.sender),
                email_message_id=candidate.message_id,
                status=DEFAULT_TICKET_STATUS,
                priority=DEFAULT_TICKET_PRIORITY,
            ),
        )
    except ticket_store.DuplicateTicketError:
        # Another run created it between our check and insert.
        logger.warning("Duplicate ticket insert for message, skipping", extra=context)
        client.mark_read(sequence)
        return False
    except Exception:
        db.rollback()
        logger.exception("Failed to process message", extra=context)
        return False

    logger.info(
        "Created ticket %s from message from %s",
        ticket.id,
        mask_email(candidate.sender),
        extra=context,
    )
    client.mark_read(sequence)
    return True


def _candidate_sequences(client: MailboxClient, config: MailboxConfig) -> list[str]:
    info = client.select_mailbox(config.mailbox)
    if info.exists == 0:
        return []
    criteria = SearchCriteria(unseen=True, subject=config.ticket_marker)
    return list(islice(client.search(criteria), max(config.max_messages, 0)))


def run_email_sync(
    db: Session,
    *,
    config: MailboxConfig | None = None,
    client_factory: MailboxClientFactory | None = None,
) -> SyncResult:
    """Run one ingestion pass to completion.

    Raises:
        MailError (or ConfigurationError): setup failed; the run is recorded
        as FAILED before the error is re-raised.
    """
    run = sync_run_store.start_run(db)
    run_id = str(run.id)
    messages_processed = 0
    tickets_created = 0
    logger.info("Email sync started", extra=build_log_context(run_id=run_id))

    try:
        config = config or MailboxConfig.from_settings()
        with open_mailbox(config, client_factory) as client:
            sequences = _candidate_sequences(client, config)
            messages_processed = len(sequences)
            for sequence in sequences:
                if _process_candidate(db, client, sequence, config, run_id):
                    tickets_created += 1
    except Exception as exc:
        db.rollback()
        sync_run_store.fail_run(
            db,
            run,
            error_message=str(exc) or exc.__class__.__name__,
            messages_processed=messages_processed,
            tickets_created=tickets_created,
        )
        logger.error(
            "Email sync failed: %s",
            exc,
            extra=build_log_context(run_id=run_id),
        )
        raise

    sync_run_store.complete_run(
        db,
        run,
        messages_processed=messages_processed,
        tickets_created=tickets_created,
    )
    logger.info(
        "Email sync completed: %d messages, %d tickets",
        messages_processed,
        tickets_created,
        extra=build_log_context(run_id=run_id),
    )
    return SyncResult(
        run_id=run.id,
        status=SyncRunStatus.COMPLETED,
        messages_processed=messages_processed,
        tickets_created=tickets_created,
    )

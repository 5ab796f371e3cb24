"""Completion notice sent to the requester when a ticket is DONE.

Best effort: ``notify_ticket_completed`` never raises. The DONE check is
the caller's job.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from ticketmail.core.structured_logging import build_log_context, mask_email
from ticketmail.db.models import Ticket
from ticketmail.services.mail_config import SubmissionConfig
from ticketmail.services.mail_errors import ConfigurationError, SubmissionError
from ticketmail.services.mime_extractor import extract_email_address
from ticketmail.services.smtp_submission import MailSubmitter, SmtpSubmissionClient

logger = logging.getLogger(__name__)

SubmitterFactory = Callable[[SubmissionConfig], MailSubmitter]

COMPLETION_TEMPLATE = """Hello,

Your support ticket has been completed:

Title: {title}
Description: {description}
Status: DONE
Created: {created}
Completed: {completed}

Thank you for contacting our support team.

Best regards,
Support Team"""


def _format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "unknown"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def render_completion_email(ticket: Ticket, *, completed_at: datetime) -> tuple[str, str]:
    """Return ``(subject, body)`` for the completion notice."""
    subject = f"[TICKET] {ticket.title} - Completed"
    body = COMPLETION_TEMPLATE.format(
        title=ticket.title,
        description=ticket.description or "",
        created=_format_timestamp(ticket.created_at),
        completed=_format_timestamp(completed_at),
    )
    return subject, body


def notify_ticket_completed(
    ticket: Ticket,
    *,
    submission_config: SubmissionConfig | None = None,
    completed_at: datetime | None = None,
    submitter_factory: SubmitterFactory | None = None,
) -> bool:
    """Send the completion notice. Returns False (and logs) on any failure."""
    context = build_log_context(ticket_id=str(ticket.id))
    recipient = extract_email_address(ticket.email)
    try:
        config = submission_config or SubmissionConfig.from_settings()
        subject, body = render_completion_email(
            ticket, completed_at=completed_at or datetime.now(timezone.utc)
        )
        submitter = (submitter_factory or SmtpSubmissionClient)(config)
        submitter.send(recipient, subject, body)
    except SubmissionError as exc:
        logger.warning(
            "Completion notice failed at step %s: %s", exc.step, exc, extra=context
        )
        return False
    except ConfigurationError as exc:
        logger.warning("Completion notice not sent: %s", exc, extra=context)
        return False
    except Exception:
        logger.exception("Completion notice failed", extra=context)
        return False

    logger.info("Completion notice sent to %s", mask_email(recipient), extra=context)
    return True

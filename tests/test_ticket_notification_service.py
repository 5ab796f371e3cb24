from datetime import datetime, timezone

import pytest

from ticketmail.db.enums import TicketStatus
from ticketmail.schemas.tickets import TicketCreate
from ticketmail.services import ticket_notification_service, ticket_service, ticket_store
from ticketmail.services.mail_errors import SubmissionError
from ticketmail.services.ticket_notification_service import (
    notify_ticket_completed,
    render_completion_email,
)


def _ticket(db, **overrides):
    data = {
        "title": "Printer jammed",
        "description": "Floor 3 printer",
        "email": "Jane Doe <jane@example.com>",
        "email_message_id": "<n1@example.com>",
    }
    data.update(overrides)
    return ticket_store.create_ticket(db, TicketCreate(**data))


def test_render_completion_email(db):
    ticket = _ticket(db)
    ticket.created_at = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)

    subject, body = render_completion_email(
        ticket, completed_at=datetime(2024, 3, 2, 17, 5, tzinfo=timezone.utc)
    )

    assert subject == "[TICKET] Printer jammed - Completed"
    assert "Title: Printer jammed" in body
    assert "Description: Floor 3 printer" in body
    assert "Status: DONE" in body
    assert "Created: 2024-03-01 09:30 UTC" in body
    assert "Completed: 2024-03-02 17:05 UTC" in body
    assert body.startswith("Hello,")


def test_notify_sends_to_extracted_address(db, submission_config, recording_submitter):
    ticket = _ticket(db)

    sent = notify_ticket_completed(
        ticket, submission_config=submission_config, submitter_factory=recording_submitter
    )

    assert sent is True
    (submitter,) = recording_submitter.instances
    assert submitter.config is submission_config
    to, subject, _ = submitter.sent[0]
    assert to == "jane@example.com"
    assert subject == "[TICKET] Printer jammed - Completed"


def test_notify_handles_quoted_display_name(db, submission_config, recording_submitter):
    ticket = _ticket(db, email='"Doe, Jane" <jane@example.com>')

    sent = notify_ticket_completed(
        ticket, submission_config=submission_config, submitter_factory=recording_submitter
    )

    assert sent is True
    assert recording_submitter.instances[0].sent[0][0] == "jane@example.com"


def test_notify_swallows_submission_error(db, submission_config, recording_submitter, caplog):
    ticket = _ticket(db)
    recording_submitter.fail_with = SubmissionError("STARTTLS", "454 TLS not available")

    sent = notify_ticket_completed(
        ticket, submission_config=submission_config, submitter_factory=recording_submitter
    )

    assert sent is False
    assert "STARTTLS" in caplog.text


def test_notify_swallows_missing_configuration(db, monkeypatch, recording_submitter):
    from ticketmail.core.config import settings

    monkeypatch.setattr(settings, "SMTP_HOST", "")
    ticket = _ticket(db)

    assert notify_ticket_completed(ticket, submitter_factory=recording_submitter) is False
    assert recording_submitter.instances == []


def test_notify_swallows_unexpected_errors(db, submission_config, recording_submitter):
    ticket = _ticket(db)
    recording_submitter.fail_with = RuntimeError("socket exploded")

    assert (
        notify_ticket_completed(
            ticket, submission_config=submission_config, submitter_factory=recording_submitter
        )
        is False
    )


def test_status_update_to_done_notifies_once(db, monkeypatch, submission_config):
    ticket = _ticket(db)
    calls = []
    monkeypatch.setattr(
        ticket_notification_service,
        "notify_ticket_completed",
        lambda t, **kwargs: calls.append(t.id) or True,
    )

    ticket_service.update_ticket_status(db, ticket.id, TicketStatus.IN_PROGRESS)
    ticket_service.update_ticket_status(db, ticket.id, TicketStatus.DONE)
    ticket_service.update_ticket_status(db, ticket.id, TicketStatus.DONE)

    assert calls == [ticket.id]


def test_status_update_survives_notification_failure(
    db, monkeypatch, submission_config, recording_submitter
):
    ticket = _ticket(db)
    recording_submitter.fail_with = SubmissionError("AUTH", "535 bad credentials")
    monkeypatch.setattr(ticket_notification_service, "SmtpSubmissionClient", recording_submitter)

    updated = ticket_service.update_ticket_status(
        db, ticket.id, TicketStatus.DONE, submission_config=submission_config
    )

    assert len(recording_submitter.instances) == 1
    assert updated.status == TicketStatus.DONE
    db.expire_all()
    assert ticket_store.get_ticket(db, ticket.id).status == TicketStatus.DONE


def test_status_update_missing_ticket(db):
    import uuid

    with pytest.raises(ticket_store.TicketNotFoundError):
        ticket_service.update_ticket_status(db, uuid.uuid4(), TicketStatus.DONE)

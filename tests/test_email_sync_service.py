from dataclasses import replace

import pytest
from sqlalchemy import func, select

from ticketmail.db.enums import SyncRunStatus, TicketPriority, TicketStatus
from ticketmail.db.models import EmailSyncRun, Ticket
from ticketmail.services import sync_run_store
from ticketmail.services.email_sync_service import (
    derive_ticket_title,
    requester_address,
    run_email_sync,
)
from ticketmail.services.mail_errors import AuthError, ConfigurationError, ProtocolError
from ticketmail.services.mailbox_client import SEEN_FLAG


def _ticket_count(db) -> int:
    return db.execute(select(func.count()).select_from(Ticket)).scalar_one()


@pytest.mark.parametrize(
    "subject,expected",
    [
        ("[TICKET] Printer jammed", "Printer jammed"),
        ("[TICKET]Printer jammed", "Printer jammed"),
        ("[TICKET]   ", "Ticket from Email"),
        ("", "Ticket from Email"),
        (None, "Ticket from Email"),
        ("Re: [TICKET] Printer", "Re: [TICKET] Printer"),
    ],
)
def test_derive_ticket_title(subject, expected):
    assert derive_ticket_title(subject) == expected


def test_sync_creates_tickets_and_marks_read(db, fake_mailbox, mailbox_config, raw_message):
    fake_mailbox.add_message(
        "1",
        raw_message(
            subject="[TICKET] Printer jammed",
            message_id="<a@example.com>",
            body="It=E2=80=99s jammed again.",
            transfer_encoding="quoted-printable",
        ),
    )
    fake_mailbox.add_message("2", raw_message(subject="Lunch on Friday?", message_id="<b@example.com>"))
    fake_mailbox.add_message(
        "3",
        raw_message(subject="[TICKET] VPN", sender="bob@example.com", message_id="<c@example.com>"),
    )

    result = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    assert result.status is SyncRunStatus.COMPLETED
    assert result.messages_processed == 2
    assert result.tickets_created == 2
    assert result.message == "Successfully processed 2 emails and created 2 tickets"

    tickets = {t.email_message_id: t for t in db.execute(select(Ticket)).scalars()}
    assert set(tickets) == {"<a@example.com>", "<c@example.com>"}
    printer = tickets["<a@example.com>"]
    assert printer.title == "Printer jammed"
    assert printer.description == "It's jammed again."
    assert printer.email == "Jane Doe <jane@example.com>"
    assert printer.status == TicketStatus.OPEN
    assert printer.priority == TicketPriority.MEDIUM

    assert SEEN_FLAG in fake_mailbox.flags["1"]
    assert SEEN_FLAG not in fake_mailbox.flags["2"]
    assert fake_mailbox.disconnects == 1

    run = sync_run_store.get_run(db, result.run_id)
    assert run.status == SyncRunStatus.COMPLETED
    assert run.completed_at is not None
    assert run.error_message is None


def test_body_fetches_use_peek(db, fake_mailbox, mailbox_config, raw_message):
    fake_mailbox.add_message("1", raw_message(subject="[TICKET] Peek"))

    run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    body_fetches = [opts for _, opts in fake_mailbox.fetches if opts.body]
    assert body_fetches and all(not opts.mark_seen for opts in body_fetches)


def test_second_run_is_idempotent(db, fake_mailbox, mailbox_config, raw_message):
    fake_mailbox.add_message("1", raw_message(subject="[TICKET] One", message_id="<1@x>"))
    fake_mailbox.add_message("2", raw_message(subject="[TICKET] Two", message_id="<2@x>"))

    first = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)
    # Simulate mark-read having been lost on the server.
    fake_mailbox.mark_all_unread()
    fetches_before = len(fake_mailbox.fetches)
    second = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    assert first.tickets_created == 2
    assert second.messages_processed == 2
    assert second.tickets_created == 0
    assert _ticket_count(db) == 2
    # Duplicates are still marked read so they stop matching the search.
    assert all(SEEN_FLAG in flags for flags in fake_mailbox.flags.values())
    # Dedup is decided from headers alone.
    second_body_fetches = [opts for _, opts in fake_mailbox.fetches[fetches_before:] if opts.body]
    assert second_body_fetches == []


def test_messages_without_message_id_use_sequence_key(
    db, fake_mailbox, mailbox_config, raw_message
):
    fake_mailbox.add_message("4", raw_message(subject="[TICKET] No id A", message_id=None))
    fake_mailbox.add_message("7", raw_message(subject="[TICKET] No id B", message_id=None))

    result = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    assert result.tickets_created == 2
    keys = set(db.execute(select(Ticket.email_message_id)).scalars())
    assert keys == {"seq-4", "seq-7"}


def test_repeated_search_hit_creates_one_ticket(db, fake_mailbox, mailbox_config, raw_message):
    fake_mailbox.add_message("5", raw_message(subject="[TICKET] Repeated hit", message_id=None))
    fake_mailbox.duplicate_search_results = True

    result = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    assert result.status is SyncRunStatus.COMPLETED
    assert result.tickets_created == 1
    keys = list(db.execute(select(Ticket.email_message_id)).scalars())
    assert keys == ["seq-5"]


def test_overlong_sender_is_stored_as_bare_address(db, fake_mailbox, mailbox_config, raw_message):
    sender = f'"{"Very Long Display Name " * 20}" <requester@example.com>'
    fake_mailbox.add_message(
        "1", raw_message(subject="[TICKET] Long sender", sender=sender, message_id="<long@x>")
    )

    result = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    assert result.tickets_created == 1
    ticket = db.execute(select(Ticket)).scalar_one()
    assert ticket.email == "requester@example.com"


@pytest.mark.parametrize(
    "sender,expected",
    [
        ("Jane Doe <jane@example.com>", "Jane Doe <jane@example.com>"),
        ("", "unknown@invalid"),
        (None, "unknown@invalid"),
        ("x" * 400, "x" * 320),
    ],
)
def test_requester_address(sender, expected):
    assert requester_address(sender) == expected


def test_empty_mailbox_completes_with_zero_counts(db, fake_mailbox, mailbox_config):
    result = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    assert result.status is SyncRunStatus.COMPLETED
    assert (result.messages_processed, result.tickets_created) == (0, 0)
    assert "search" not in fake_mailbox.calls


def test_failing_message_does_not_stop_the_run(db, fake_mailbox, mailbox_config, raw_message):
    for seq in ("1", "2", "3"):
        fake_mailbox.add_message(
            seq, raw_message(subject=f"[TICKET] Issue {seq}", message_id=f"<{seq}@x>")
        )
    fake_mailbox.body_fetch_errors["2"] = ProtocolError("Fetch 2 failed: NO")

    result = run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    assert result.status is SyncRunStatus.COMPLETED
    assert result.messages_processed == 3
    assert result.tickets_created == 2
    assert SEEN_FLAG not in fake_mailbox.flags["2"]
    assert SEEN_FLAG in fake_mailbox.flags["3"]


def test_fetch_cap_limits_candidates(db, fake_mailbox, mailbox_config, raw_message):
    for seq in ("1", "2", "3"):
        fake_mailbox.add_message(
            seq, raw_message(subject=f"[TICKET] Issue {seq}", message_id=f"<{seq}@x>")
        )

    result = run_email_sync(
        db,
        config=replace(mailbox_config, max_messages=2),
        client_factory=fake_mailbox.factory,
    )

    assert result.messages_processed == 2
    assert SEEN_FLAG not in fake_mailbox.flags["3"]


def test_auth_failure_records_failed_run(db, fake_mailbox, mailbox_config, raw_message):
    fake_mailbox.add_message("1", raw_message(subject="[TICKET] Never read"))
    fake_mailbox.auth_error = AuthError("Login failed: NO [AUTHENTICATIONFAILED]")

    with pytest.raises(AuthError):
        run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    run = db.execute(select(EmailSyncRun)).scalar_one()
    assert run.status == SyncRunStatus.FAILED
    assert run.completed_at is not None
    assert "Login failed" in run.error_message
    assert _ticket_count(db) == 0
    assert fake_mailbox.disconnects == 1


def test_select_failure_records_failed_run(db, fake_mailbox, mailbox_config):
    fake_mailbox.select_error = ProtocolError("Select INBOX failed: NO")

    with pytest.raises(ProtocolError):
        run_email_sync(db, config=mailbox_config, client_factory=fake_mailbox.factory)

    run = db.execute(select(EmailSyncRun)).scalar_one()
    assert run.status == SyncRunStatus.FAILED


def test_missing_configuration_fails_fast(db, fake_mailbox, monkeypatch):
    from ticketmail.core.config import settings

    monkeypatch.setattr(settings, "MAILBOX_HOST", "")

    with pytest.raises(ConfigurationError, match="Missing required configuration: MAILBOX_HOST"):
        run_email_sync(db, client_factory=fake_mailbox.factory)

    assert fake_mailbox.calls == []
    run = db.execute(select(EmailSyncRun)).scalar_one()
    assert run.status == SyncRunStatus.FAILED
    assert run.error_message == "Missing required configuration: MAILBOX_HOST"

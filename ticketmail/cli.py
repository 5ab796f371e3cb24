"""CLI tools for ticketmail administration."""

import logging
from uuid import UUID

import click

from ticketmail.db.base import Base
from ticketmail.db.enums import TicketStatus
from ticketmail.db.session import SessionLocal, engine
from ticketmail.services import email_sync_service, ticket_notification_service, ticket_store
from ticketmail.services.mail_config import SubmissionConfig
from ticketmail.services.mail_errors import MailError, SubmissionError
from ticketmail.services.smtp_submission import send_plain_text


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging (protocol traces)")
def cli(verbose: bool):
    """Ticketmail CLI tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
def init_db():
    """Create the tickets and email_sync_runs tables if missing."""
    import ticketmail.db.models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=engine)
    click.echo("✓ Database tables created")


@cli.command("sync-email")
def sync_email():
    """
    Run one mailbox ingestion pass.

    Example:
        python -m ticketmail.cli sync-email
    """
    db = SessionLocal()
    try:
        result = email_sync_service.run_email_sync(db)
    except MailError as e:
        click.echo(f"❌ Email sync failed: {e}")
        raise SystemExit(1)
    finally:
        db.close()
    click.echo(f"✓ {result.message}")


@cli.command("notify-ticket")
@click.option("--ticket-id", required=True, type=click.UUID, help="Ticket UUID")
def notify_ticket(ticket_id: UUID):
    """Send the completion notice for a DONE ticket."""
    db = SessionLocal()
    try:
        ticket = ticket_store.get_ticket(db, ticket_id)
        if not ticket:
            click.echo(f"❌ Ticket {ticket_id} not found")
            raise SystemExit(1)
        if ticket.status != TicketStatus.DONE:
            click.echo("❌ Email notification only sent for DONE tickets")
            raise SystemExit(1)
        if not ticket_notification_service.notify_ticket_completed(ticket):
            click.echo("❌ Failed to send email notification (see logs)")
            raise SystemExit(1)
        click.echo(f"✓ Completion notice sent for ticket {ticket_id}")
    finally:
        db.close()


@cli.command("send-test-email")
@click.option("--to", "recipient", required=True, help="Recipient address")
@click.option("--count", default=1, show_default=True, help="Number of messages")
def send_test_email(recipient: str, count: int):
    """Send marked test messages so the next sync creates tickets."""
    try:
        config = SubmissionConfig.from_settings()
    except MailError as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    for n in range(1, count + 1):
        subject = f"[TICKET] Test ticket {n}"
        try:
            send_plain_text(
                config,
                to=recipient,
                subject=subject,
                body=f"This is test ticket number {n}.\n\nPlease ignore.",
            )
        except SubmissionError as e:
            click.echo(f"❌ {subject}: {e}")
            raise SystemExit(1)
        click.echo(f"✓ Sent: {subject}")


if __name__ == "__main__":
    cli()

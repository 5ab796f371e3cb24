"""Run-log persistence for email sync runs.

A run is written exactly twice: once at start (RUNNING) and once at its
terminal state (COMPLETED or FAILED). Terminal runs are never modified.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ticketmail.db.enums import SyncRunStatus
from ticketmail.db.models import EmailSyncRun

MAX_ERROR_MESSAGE_CHARS = 2000


class SyncRunStateError(Exception):
    """Attempted transition out of a terminal run state."""

    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def start_run(db: Session) -> EmailSyncRun:
    run = EmailSyncRun(
        status=SyncRunStatus.RUNNING,
        started_at=_now_utc(),
        messages_processed=0,
        tickets_created=0,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def _finish(
    db: Session,
    run: EmailSyncRun,
    *,
    status: SyncRunStatus,
    messages_processed: int,
    tickets_created: int,
    error_message: str | None = None,
) -> EmailSyncRun:
    if run.status != SyncRunStatus.RUNNING:
        raise SyncRunStateError(f"Run {run.id} is already {run.status.value}")
    run.status = status
    run.completed_at = _now_utc()
    run.messages_processed = messages_processed
    run.tickets_created = tickets_created
    run.error_message = error_message
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def complete_run(
    db: Session, run: EmailSyncRun, *, messages_processed: int, tickets_created: int
) -> EmailSyncRun:
    return _finish(
        db,
        run,
        status=SyncRunStatus.COMPLETED,
        messages_processed=messages_processed,
        tickets_created=tickets_created,
    )


def fail_run(
    db: Session,
    run: EmailSyncRun,
    *,
    error_message: str,
    messages_processed: int = 0,
    tickets_created: int = 0,
) -> EmailSyncRun:
    return _finish(
        db,
        run,
        status=SyncRunStatus.FAILED,
        messages_processed=messages_processed,
        tickets_created=tickets_created,
        error_message=(error_message or "Email sync failed")[:MAX_ERROR_MESSAGE_CHARS],
    )


def get_run(db: Session, run_id: UUID) -> EmailSyncRun | None:
    return db.get(EmailSyncRun, run_id)


def list_recent_runs(db: Session, *, limit: int = 10) -> list[EmailSyncRun]:
    """Most recent runs first."""
    stmt = select(EmailSyncRun).order_by(EmailSyncRun.started_at.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())

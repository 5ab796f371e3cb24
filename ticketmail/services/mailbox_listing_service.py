"""Read-only listing of recent unread mailbox messages.

Lists unread messages (optionally limited to today or a sent-date range)
with envelope fields and readable body text, newest first. Messages stay
unread unless ``mark_as_read`` is set. Nothing is written to the database.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, replace
from email.utils import parsedate_to_datetime
from itertools import islice
from typing import Literal

from ticketmail.core.structured_logging import build_log_context
from ticketmail.services.mail_config import MailboxConfig
from ticketmail.services.mail_errors import MailError
from ticketmail.services.mailbox_client import (
    FetchOptions,
    MailboxClientFactory,
    SearchCriteria,
    build_candidate,
    open_mailbox,
)
from ticketmail.services.mime_extractor import extract_message_text

logger = logging.getLogger(__name__)

ListFilter = Literal["all", "today", "date_range"]

DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 50


@dataclass(frozen=True)
class MailboxMessage:
    sequence: str
    message_id: str
    sender: str
    recipient: str
    subject: str
    date: str | None
    is_unread: bool
    body: str

    @property
    def sent_at(self) -> datetime.datetime | None:
        return parse_message_date(self.date)


def parse_message_date(value: str | None) -> datetime.datetime | None:
    """Parse a Date header into an aware datetime; None when absent or malformed."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def build_list_criteria(
    filter_by: ListFilter = "today",
    *,
    start_date: datetime.date | None = None,
    end_date: datetime.date | None = None,
    today: datetime.date | None = None,
) -> SearchCriteria:
    """Search keys for a listing filter.

    Raises:
        ValueError: unknown filter, or ``date_range`` without both dates.
    """
    if filter_by == "all":
        return SearchCriteria(unseen=True)
    if filter_by == "today":
        return SearchCriteria(unseen=True, since=today or datetime.date.today())
    if filter_by == "date_range":
        if start_date is None or end_date is None:
            raise ValueError("start_date and end_date required for date_range filter")
        return SearchCriteria(unseen=True, since=start_date, before=end_date)
    raise ValueError(f"Unknown filter: {filter_by!r}")


def sort_newest_first(messages: list[MailboxMessage]) -> list[MailboxMessage]:
    """Order by Date header, newest first; undated messages go last."""
    dated = [m for m in messages if m.sent_at is not None]
    undated = [m for m in messages if m.sent_at is None]
    dated.sort(key=lambda m: m.sent_at, reverse=True)
    return dated + undated


def list_unread_messages(
    *,
    filter_by: ListFilter = "today",
    start_date: datetime.date | None = None,
    end_date: datetime.date | None = None,
    mark_as_read: bool = False,
    ticket_only: bool = False,
    limit: int = DEFAULT_LIST_LIMIT,
    today: datetime.date | None = None,
    config: MailboxConfig | None = None,
    client_factory: MailboxClientFactory | None = None,
) -> list[MailboxMessage]:
    """Fetch up to ``limit`` matching unread messages.

    ``ticket_only`` narrows the search to subjects carrying the ticket marker.
    A message that fails to fetch is logged and left out of the result.

    Raises:
        ValueError: invalid filter arguments (checked before connecting).
        MailError: connection, authentication or mailbox selection failed.
    """
    criteria = build_list_criteria(
        filter_by, start_date=start_date, end_date=end_date, today=today
    )
    config = config or MailboxConfig.from_settings()
    if ticket_only:
        criteria = replace(criteria, subject=config.ticket_marker)
    options = FetchOptions(headers=False, body=True, mark_seen=mark_as_read)
    messages: list[MailboxMessage] = []

    with open_mailbox(config, client_factory) as client:
        info = client.select_mailbox(config.mailbox)
        if info.exists == 0:
            return []
        sequences = list(islice(client.search(criteria), max(min(limit, MAX_LIST_LIMIT), 0)))
        for sequence in sequences:
            try:
                fetched = client.fetch(sequence, options)
            except MailError as exc:
                logger.warning(
                    "Failed to fetch message for listing: %s",
                    exc,
                    extra=build_log_context(sequence=sequence),
                )
                continue
            candidate = build_candidate(fetched)
            messages.append(
                MailboxMessage(
                    sequence=candidate.sequence,
                    message_id=candidate.message_id,
                    sender=candidate.sender,
                    recipient=candidate.recipient,
                    subject=candidate.subject,
                    date=candidate.date,
                    is_unread=candidate.is_unread,
                    body=extract_message_text(candidate.raw or b""),
                )
            )

    logger.info("Listed %d unread messages (filter=%s)", len(messages), filter_by)
    return sort_newest_first(messages)

"""Mailbox (IMAP) client interface, value types and connection helpers.

Two backends implement ``MailboxClient``:
- ``imap_native.NativeImapClient``: hand-rolled tagged command/response.
- ``imap_lib.ImaplibMailboxClient``: built on the standard ``imaplib``.

Error contracts:
- connect: MailConnectionError
- authenticate: AuthError
- select_mailbox / search / fetch: ProtocolError
- mark_read: never raises, returns False on failure
- disconnect: never raises
"""

from __future__ import annotations

import datetime
import re
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Protocol

from ticketmail.services.mail_config import MailboxConfig
from ticketmail.services.mail_errors import ProtocolError
from ticketmail.services.mime_extractor import (
    decode_header_value,
    parse_headers,
    split_headers,
)


SEEN_FLAG = "\\Seen"
_SEQUENCE_RE = re.compile(r"^[1-9][0-9]*$")
_FLAGS_RE = re.compile(r"FLAGS \(([^)]*)\)", re.IGNORECASE)
_IMAP_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


class MailboxState(str, Enum):
    """Connection state; every transition is one command exchange."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SELECTED = "selected"


@dataclass(frozen=True)
class MailboxInfo:
    name: str
    exists: int
    uidvalidity: int | None = None


@dataclass(frozen=True)
class SearchCriteria:
    """Search keys; all given keys must match (IMAP AND semantics)."""

    unseen: bool = False
    subject: str | None = None
    since: datetime.date | None = None
    before: datetime.date | None = None

    def to_imap(self) -> str:
        keys: list[str] = []
        if self.subject is not None and not self.subject.isascii():
            keys.append("CHARSET UTF-8")
        if self.unseen:
            keys.append("UNSEEN")
        if self.since is not None:
            keys.append(f"SENTSINCE {format_imap_date(self.since)}")
        if self.before is not None:
            keys.append(f"SENTBEFORE {format_imap_date(self.before)}")
        if self.subject is not None:
            keys.append(f"SUBJECT {quote_imap_string(self.subject)}")
        return " ".join(keys) or "ALL"


@dataclass(frozen=True)
class FetchOptions:
    """What to fetch for a message.

    ``headers`` is the cheap envelope+flags fetch; ``body`` fetches the full
    raw message. Body fetches use peek semantics unless ``mark_seen`` is set.
    """

    headers: bool = True
    body: bool = False
    mark_seen: bool = False

    def to_imap(self) -> str:
        items = ["FLAGS"]
        if self.body:
            items.append("BODY[]" if self.mark_seen else "BODY.PEEK[]")
        elif self.headers:
            items.append("BODY.PEEK[HEADER]")
        return f"({' '.join(items)})"


HEADERS_ONLY = FetchOptions(headers=True, body=False)
FULL_MESSAGE = FetchOptions(headers=False, body=True)


@dataclass
class FetchedMessage:
    sequence: str
    flags: tuple[str, ...] = ()
    header_bytes: bytes | None = None
    raw: bytes | None = None

    @property
    def is_unread(self) -> bool:
        return not any(flag.lower() == SEEN_FLAG.lower() for flag in self.flags)

    @property
    def headers(self) -> dict[str, str]:
        source = self.header_bytes if self.header_bytes is not None else self.raw
        if not source:
            return {}
        header_block, _ = split_headers(source)
        return parse_headers(header_block)


@dataclass
class CandidateMessage:
    """A retrieved mailbox entry; lives only for the duration of one run."""

    sequence: str
    message_id: str
    subject: str
    sender: str
    is_unread: bool = True
    date: str | None = None
    raw: bytes | None = None
    recipient: str = ""


class MailboxClient(Protocol):
    state: MailboxState

    def connect(self) -> None: ...

    def authenticate(self, username: str, password: str) -> None: ...

    def select_mailbox(self, name: str) -> MailboxInfo: ...

    def search(self, criteria: SearchCriteria) -> Iterator[str]: ...

    def fetch(self, identifier: str, options: FetchOptions = HEADERS_ONLY) -> FetchedMessage: ...

    def mark_read(self, identifier: str) -> bool: ...

    def disconnect(self) -> None: ...


MailboxClientFactory = Callable[[MailboxConfig], MailboxClient]


def format_imap_date(value: datetime.date) -> str:
    """IMAP search date, e.g. ``19-Oct-2026`` (month names are not localized)."""
    return f"{value.day:02d}-{_IMAP_MONTHS[value.month - 1]}-{value.year}"


def quote_imap_string(value: str) -> str:
    """Render an IMAP quoted string."""
    if "\r" in value or "\n" in value:
        raise ProtocolError("IMAP strings cannot contain line breaks")
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def validate_sequence(identifier: str) -> str:
    value = str(identifier).strip()
    if not _SEQUENCE_RE.match(value):
        raise ProtocolError(f"Invalid message identifier: {identifier!r}")
    return value


def parse_flags(text: str) -> tuple[str, ...]:
    match = _FLAGS_RE.search(text)
    if not match:
        return ()
    return tuple(flag for flag in match.group(1).split() if flag)


def synthetic_message_id(sequence: str) -> str:
    """Dedup key for messages that carry no Message-ID header."""
    return f"seq-{sequence}"


def build_candidate(fetched: FetchedMessage) -> CandidateMessage:
    """Build a candidate from a headers (or full) fetch."""
    headers = fetched.headers
    message_id = headers.get("message-id", "").strip()
    return CandidateMessage(
        sequence=fetched.sequence,
        message_id=message_id or synthetic_message_id(fetched.sequence),
        subject=decode_header_value(headers.get("subject", "")),
        sender=decode_header_value(headers.get("from", "")),
        recipient=decode_header_value(headers.get("to", "")),
        is_unread=fetched.is_unread,
        date=headers.get("date") or None,
        raw=fetched.raw,
    )


def create_mailbox_client(config: MailboxConfig) -> MailboxClient:
    """Build a client for the configured backend."""
    if config.backend == "imaplib":
        from ticketmail.services.imap_lib import ImaplibMailboxClient

        return ImaplibMailboxClient(config)

    from ticketmail.services.imap_native import NativeImapClient

    return NativeImapClient(config)


@contextmanager
def open_mailbox(
    config: MailboxConfig,
    client_factory: MailboxClientFactory | None = None,
) -> Iterator[MailboxClient]:
    """Connect and authenticate; the connection is released on every exit path."""
    client = (client_factory or create_mailbox_client)(config)
    try:
        client.connect()
        client.authenticate(config.username, config.password)
        yield client
    finally:
        client.disconnect()

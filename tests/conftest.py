"""
Test configuration and fixtures.

Provides:
- In-memory SQLite session per test (tables created fresh)
- HTTPX AsyncClient wired to the app with get_db overridden
- Scripted fake transports and a fake mailbox client (no live servers)
"""
import io
import os
from email.utils import parsedate_to_datetime
from typing import AsyncGenerator, Generator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Must be set before the app (and its limiter/engine) is imported
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"

from ticketmail.main import app
from ticketmail.core.deps import get_db
from ticketmail.db.base import Base
from ticketmail.db import models  # noqa: F401
from ticketmail.services.mail_config import MailboxConfig, SubmissionConfig
from ticketmail.services.mail_errors import MailConnectionError, ProtocolError
from ticketmail.services.mailbox_client import (
    SEEN_FLAG,
    FetchedMessage,
    FetchOptions,
    MailboxInfo,
    MailboxState,
    SearchCriteria,
)
from ticketmail.services.mime_extractor import parse_raw_message


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh in-memory database per test; app code may commit freely."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app, sharing the test session."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Config Fixtures
# =============================================================================

@pytest.fixture
def mailbox_config() -> MailboxConfig:
    return MailboxConfig(
        host="imap.test",
        port=993,
        username="support@example.com",
        password="imap-secret",
    )


@pytest.fixture
def submission_config() -> SubmissionConfig:
    return SubmissionConfig(
        host="smtp.test",
        port=587,
        username="support@example.com",
        password="smtp-secret",
        sender="support@example.com",
    )


@pytest.fixture
def configured_settings(monkeypatch):
    """Populate mailbox and SMTP settings as if from the environment."""
    from ticketmail.core.config import settings

    values = {
        "MAILBOX_HOST": "imap.test",
        "MAILBOX_PORT": 993,
        "MAILBOX_USERNAME": "support@example.com",
        "MAILBOX_PASSWORD": "imap-secret",
        "MAILBOX_NAME": "INBOX",
        "MAILBOX_BACKEND": "native",
        "SMTP_HOST": "smtp.test",
        "SMTP_PORT": 587,
        "SMTP_USERNAME": "support@example.com",
        "SMTP_PASSWORD": "smtp-secret",
        "SMTP_FROM": "",
    }
    for name, value in values.items():
        monkeypatch.setattr(settings, name, value)
    return settings


# =============================================================================
# Fakes
# =============================================================================

class ScriptedTransport:
    """Transport that replays a canned server byte stream and records writes."""

    def __init__(self, script: bytes = b"", *, tls_error: Exception | None = None):
        self._stream = io.BytesIO(script)
        self.writes: list[bytes] = []
        self.tls_hostname: str | None = None
        self.tls_error = tls_error
        self.closed = False
        self.opened_with: dict = {}

    def readline(self) -> bytes:
        line = self._stream.readline()
        if not line:
            raise MailConnectionError("Connection closed by server")
        return line

    def read(self, size: int) -> bytes:
        data = self._stream.read(size)
        if len(data) < size:
            raise MailConnectionError("Connection closed by server")
        return data

    def write(self, data: bytes) -> None:
        if self.closed:
            raise MailConnectionError("Write failed: closed")
        self.writes.append(data)

    def start_tls(self, hostname: str) -> None:
        if self.tls_error is not None:
            raise self.tls_error
        self.tls_hostname = hostname

    def close(self) -> None:
        self.closed = True

    def factory(self, host, port, *, timeout, use_tls):
        self.opened_with = {"host": host, "port": port, "timeout": timeout, "use_tls": use_tls}
        return self

    @property
    def sent_lines(self) -> list[str]:
        return [w.decode("utf-8") for w in self.writes]


def build_raw_message(
    *,
    subject: str,
    sender: str = "Jane Doe <jane@example.com>",
    message_id: str | None = "<msg-1@example.com>",
    body: str = "Printer on floor 3 is jammed.",
    content_type: str = "text/plain; charset=utf-8",
    transfer_encoding: str | None = None,
    to: str | None = None,
    date: str | None = None,
) -> bytes:
    lines = [f"From: {sender}", f"Subject: {subject}"]
    if to:
        lines.append(f"To: {to}")
    if date:
        lines.append(f"Date: {date}")
    if message_id:
        lines.append(f"Message-ID: {message_id}")
    lines.append(f"Content-Type: {content_type}")
    if transfer_encoding:
        lines.append(f"Content-Transfer-Encoding: {transfer_encoding}")
    return ("\r\n".join(lines) + "\r\n\r\n" + body).encode("utf-8")


def _sent_within(header: str | None, since, before) -> bool:
    if since is None and before is None:
        return True
    if not header:
        return False
    sent = parsedate_to_datetime(header).date()
    if since is not None and sent < since:
        return False
    if before is not None and sent >= before:
        return False
    return True


class FakeMailboxClient:
    """In-memory MailboxClient; messages keyed by sequence number."""

    def __init__(self, messages: dict[str, bytes] | None = None):
        self.messages = dict(messages or {})
        self.flags: dict[str, set[str]] = {seq: set() for seq in self.messages}
        self.state = MailboxState.DISCONNECTED
        self.auth_error: Exception | None = None
        self.select_error: Exception | None = None
        self.body_fetch_errors: dict[str, Exception] = {}
        self.mark_read_fails = False
        self.calls: list[str] = []
        self.searches: list[SearchCriteria] = []
        self.duplicate_search_results = False
        self.fetches: list[tuple[str, FetchOptions]] = []
        self.disconnects = 0

    def connect(self) -> None:
        self.calls.append("connect")
        self.state = MailboxState.CONNECTED

    def authenticate(self, username: str, password: str) -> None:
        self.calls.append("authenticate")
        if self.auth_error is not None:
            raise self.auth_error
        self.state = MailboxState.AUTHENTICATED

    def select_mailbox(self, name: str) -> MailboxInfo:
        self.calls.append("select")
        if self.select_error is not None:
            raise self.select_error
        self.state = MailboxState.SELECTED
        return MailboxInfo(name=name, exists=len(self.messages))

    def search(self, criteria: SearchCriteria):
        self.calls.append("search")
        self.searches.append(criteria)
        for seq in sorted(self.messages, key=int):
            if criteria.unseen and SEEN_FLAG in self.flags[seq]:
                continue
            parsed = parse_raw_message(self.messages[seq])
            if criteria.subject and criteria.subject not in parsed.subject:
                continue
            if not _sent_within(parsed.date, criteria.since, criteria.before):
                continue
            yield seq
            if self.duplicate_search_results:
                yield seq

    def fetch(self, identifier: str, options: FetchOptions) -> FetchedMessage:
        self.fetches.append((identifier, options))
        if identifier not in self.messages:
            raise ProtocolError(f"No FETCH data returned for message {identifier}")
        if options.body and identifier in self.body_fetch_errors:
            raise self.body_fetch_errors[identifier]
        raw = self.messages[identifier]
        message = FetchedMessage(sequence=identifier, flags=tuple(sorted(self.flags[identifier])))
        if options.body:
            message.raw = raw
            if options.mark_seen:
                self.flags[identifier].add(SEEN_FLAG)
        else:
            message.header_bytes = raw
        return message

    def mark_read(self, identifier: str) -> bool:
        if self.mark_read_fails:
            return False
        self.flags[identifier].add(SEEN_FLAG)
        return True

    def add_message(self, sequence: str, raw: bytes) -> None:
        self.messages[sequence] = raw
        self.flags[sequence] = set()

    def mark_all_unread(self) -> None:
        for flags in self.flags.values():
            flags.discard(SEEN_FLAG)

    def disconnect(self) -> None:
        self.disconnects += 1
        self.state = MailboxState.DISCONNECTED

    def factory(self, config):
        return self


@pytest.fixture
def fake_mailbox() -> FakeMailboxClient:
    return FakeMailboxClient()


class RecordingSubmitter:
    """MailSubmitter double: records sends, optionally raises."""

    instances: list["RecordingSubmitter"] = []
    fail_with: Exception | None = None

    def __init__(self, config):
        self.config = config
        self.error = RecordingSubmitter.fail_with
        self.sent: list[tuple[str, str, str]] = []
        RecordingSubmitter.instances.append(self)

    def send(self, to: str, subject: str, body: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((to, subject, body))


@pytest.fixture
def recording_submitter():
    RecordingSubmitter.instances = []
    RecordingSubmitter.fail_with = None
    yield RecordingSubmitter
    RecordingSubmitter.instances = []
    RecordingSubmitter.fail_with = None


@pytest.fixture
def make_transport():
    """ScriptedTransport class; call with the server's byte stream."""
    return ScriptedTransport


@pytest.fixture
def raw_message():
    """Builder for raw RFC 822 test messages."""
    return build_raw_message

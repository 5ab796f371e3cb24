"""MailboxClient backend built on the standard library ``imaplib``."""

from __future__ import annotations

import imaplib
import logging
import ssl
from typing import Any, Iterator

from ticketmail.services.mail_config import MailboxConfig
from ticketmail.services.mail_errors import AuthError, MailConnectionError, ProtocolError
from ticketmail.services.mailbox_client import (
    FetchedMessage,
    FetchOptions,
    HEADERS_ONLY,
    MailboxInfo,
    MailboxState,
    SearchCriteria,
    parse_flags,
    quote_imap_string,
    validate_sequence,
)

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ImaplibMailboxClient:
    """Same contract as ``NativeImapClient``, delegating framing to imaplib."""

    backend = "imaplib"

    def __init__(self, config: MailboxConfig, *, imap_factory=None) -> None:
        self.config = config
        self.state = MailboxState.DISCONNECTED
        self._imap_factory = imap_factory or self._default_factory
        self._conn: imaplib.IMAP4 | None = None

    def _default_factory(self, config: MailboxConfig) -> imaplib.IMAP4:
        if config.use_tls:
            return imaplib.IMAP4_SSL(
                config.host,
                config.port,
                ssl_context=ssl.create_default_context(),
                timeout=config.timeout,
            )
        return imaplib.IMAP4(config.host, config.port, timeout=config.timeout)

    def _require_state(self, operation: str, *allowed: MailboxState) -> imaplib.IMAP4:
        if self.state not in allowed or self._conn is None:
            raise ProtocolError(f"{operation} not allowed in state {self.state.value}")
        return self._conn

    def connect(self) -> None:
        self._require_state_disconnected()
        try:
            self._conn = self._imap_factory(self.config)
        except (OSError, imaplib.IMAP4.error) as exc:
            raise MailConnectionError(
                f"Could not connect to {self.config.host}:{self.config.port}: {exc}"
            ) from exc
        self.state = MailboxState.CONNECTED

    def _require_state_disconnected(self) -> None:
        if self.state is not MailboxState.DISCONNECTED:
            raise ProtocolError(f"connect not allowed in state {self.state.value}")

    def authenticate(self, username: str, password: str) -> None:
        conn = self._require_state("authenticate", MailboxState.CONNECTED)
        try:
            typ, data = conn.login(username, password)
        except imaplib.IMAP4.abort as exc:
            raise MailConnectionError(f"Connection lost during login: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise AuthError(f"Login failed: {exc}") from exc
        if typ != "OK":
            raise AuthError(f"Login failed: {typ} {_text(data[0]) if data else ''}".strip())
        self.state = MailboxState.AUTHENTICATED

    def select_mailbox(self, name: str) -> MailboxInfo:
        conn = self._require_state("select", MailboxState.AUTHENTICATED, MailboxState.SELECTED)
        try:
            typ, data = conn.select(quote_imap_string(name))
        except imaplib.IMAP4.abort as exc:
            raise MailConnectionError(f"Connection lost during select: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ProtocolError(f"Select {name} failed: {exc}") from exc
        if typ != "OK":
            raise ProtocolError(f"Select {name} failed: {_text(data[0]) if data else typ}")
        try:
            exists = int(_text(data[0]).strip() or 0)
        except (IndexError, ValueError):
            exists = 0
        self.state = MailboxState.SELECTED
        return MailboxInfo(name=name, exists=exists)

    def search(self, criteria: SearchCriteria) -> Iterator[str]:
        conn = self._require_state("search", MailboxState.SELECTED)
        try:
            typ, data = conn.search(None, criteria.to_imap())
        except imaplib.IMAP4.abort as exc:
            raise MailConnectionError(f"Connection lost during search: {exc}") from exc
        except (imaplib.IMAP4.error, UnicodeEncodeError) as exc:
            raise ProtocolError(f"Search failed: {exc}") from exc
        if typ != "OK":
            raise ProtocolError(f"Search failed: {typ}")
        ids: list[str] = []
        for chunk in data or []:
            if chunk:
                ids.extend(token for token in _text(chunk).split() if token.isdigit())
        return iter(ids)

    def fetch(self, identifier: str, options: FetchOptions = HEADERS_ONLY) -> FetchedMessage:
        conn = self._require_state("fetch", MailboxState.SELECTED)
        sequence = validate_sequence(identifier)
        try:
            typ, data = conn.fetch(sequence, options.to_imap())
        except imaplib.IMAP4.abort as exc:
            raise MailConnectionError(f"Connection lost during fetch: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ProtocolError(f"Fetch {sequence} failed: {exc}") from exc
        if typ != "OK":
            raise ProtocolError(f"Fetch {sequence} failed: {typ}")

        items = list(data or [])
        for index, item in enumerate(items):
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            meta = _text(item[0])
            if not meta.startswith(f"{sequence} "):
                continue
            flags = parse_flags(meta)
            # Some servers send FLAGS after the literal, in the trailing chunk.
            if not flags and index + 1 < len(items) and isinstance(items[index + 1], bytes):
                flags = parse_flags(_text(items[index + 1]))
            message = FetchedMessage(sequence=sequence, flags=flags)
            if options.body:
                message.raw = item[1]
            else:
                message.header_bytes = item[1]
            return message
        raise ProtocolError(f"No FETCH data returned for message {sequence}")

    def mark_read(self, identifier: str) -> bool:
        try:
            conn = self._require_state("mark_read", MailboxState.SELECTED)
            typ, data = conn.store(validate_sequence(identifier), "+FLAGS", "(\\Seen)")
        except Exception as exc:
            logger.warning("Failed to mark message %s as read: %s", identifier, exc)
            return False
        if typ != "OK":
            logger.warning("Server refused to mark message %s as read: %s", identifier, typ)
            return False
        return True

    def disconnect(self) -> None:
        conn = self._conn
        self._conn = None
        self.state = MailboxState.DISCONNECTED
        if conn is None:
            return
        try:
            conn.logout()
        except Exception as exc:
            logger.debug("IMAP logout failed: %s", exc)

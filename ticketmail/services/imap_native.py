"""Hand-rolled IMAP4rev1 client (tagged command/response subset).

Only the commands the ingestion run needs are implemented: LOGIN, SELECT,
SEARCH, FETCH, STORE and LOGOUT. Each command gets a fresh tag (A1, A2, ...)
and the client reads until the tagged OK/NO/BAD completion line, collecting
untagged responses and ``{n}`` literals on the way.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterator

from ticketmail.core.structured_logging import build_log_context
from ticketmail.services.mail_config import MailboxConfig
from ticketmail.services.mail_errors import (
    AuthError,
    MailConnectionError,
    MailError,
    ProtocolError,
)
from ticketmail.services.mail_transport import Transport, TransportFactory, open_socket_transport
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

_LITERAL_RE = re.compile(r"\{(\d+)\}$")
_EXISTS_RE = re.compile(r"^\* (\d+) EXISTS", re.IGNORECASE)
_UIDVALIDITY_RE = re.compile(r"\[UIDVALIDITY (\d+)\]", re.IGNORECASE)
_FETCH_RE = re.compile(r"^\* (\d+) FETCH ", re.IGNORECASE)
_NIL_SECTION_RE = re.compile(r"BODY\[[^\]]*\] NIL", re.IGNORECASE)


@dataclass
class ResponseLine:
    """One logical response line; literals are returned alongside the text."""

    text: str
    literals: list[bytes] = field(default_factory=list)


@dataclass
class TaggedResponse:
    tag: str
    status: str
    text: str
    untagged: list[ResponseLine] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def describe(self) -> str:
        return f"{self.status} {self.text}".strip()


class NativeImapClient:
    """IMAP client speaking the wire protocol directly over one connection."""

    backend = "native"

    def __init__(
        self,
        config: MailboxConfig,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.config = config
        self.state = MailboxState.DISCONNECTED
        self._transport_factory = transport_factory or open_socket_transport
        self._transport: Transport | None = None
        self._tag_counter = 0

    # ------------------------------------------------------------------
    # Wire helpers
    # ------------------------------------------------------------------

    def _next_tag(self) -> str:
        self._tag_counter += 1
        return f"A{self._tag_counter}"

    def _require_state(self, operation: str, *allowed: MailboxState) -> None:
        if self.state not in allowed:
            raise ProtocolError(f"{operation} not allowed in state {self.state.value}")

    def _read_response_line(self) -> ResponseLine:
        assert self._transport is not None
        texts: list[str] = []
        literals: list[bytes] = []
        while True:
            line = self._transport.readline().decode("utf-8", errors="replace").rstrip("\r\n")
            texts.append(line)
            match = _LITERAL_RE.search(line)
            if not match:
                break
            literals.append(self._transport.read(int(match.group(1))))
        return ResponseLine(text="".join(texts), literals=literals)

    def _command(self, command: str, *, log_as: str | None = None) -> TaggedResponse:
        if self._transport is None:
            raise ProtocolError("Not connected")
        tag = self._next_tag()
        logger.debug("IMAP > %s %s", tag, log_as or command)
        self._transport.write(f"{tag} {command}\r\n".encode("utf-8"))

        untagged: list[ResponseLine] = []
        prefix = f"{tag} "
        while True:
            line = self._read_response_line()
            if line.text.startswith(prefix):
                status, _, rest = line.text[len(prefix):].partition(" ")
                status = status.upper()
                if status not in ("OK", "NO", "BAD"):
                    raise ProtocolError(f"Malformed completion for {tag}: {line.text}")
                logger.debug("IMAP < %s %s", tag, status)
                return TaggedResponse(tag=tag, status=status, text=rest, untagged=untagged)
            if line.text.startswith("+"):
                raise ProtocolError(f"Unexpected continuation request: {line.text}")
            untagged.append(line)

    # ------------------------------------------------------------------
    # MailboxClient
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the transport and consume the server greeting.

        Raises:
            MailConnectionError: transport failure or a refused greeting.
        """
        self._require_state("connect", MailboxState.DISCONNECTED)
        self._transport = self._transport_factory(
            self.config.host,
            self.config.port,
            timeout=self.config.timeout,
            use_tls=self.config.use_tls,
        )
        try:
            greeting = self._read_response_line().text
        except MailError:
            self._close_transport()
            raise
        if not greeting.upper().startswith(("* OK", "* PREAUTH")):
            self._close_transport()
            raise MailConnectionError(f"Server refused connection: {greeting}")
        self.state = MailboxState.CONNECTED
        logger.info(
            "IMAP connected to %s:%s",
            self.config.host,
            self.config.port,
            extra=build_log_context(mailbox=self.config.mailbox),
        )

    def authenticate(self, username: str, password: str) -> None:
        """LOGIN with the given credentials.

        Raises:
            AuthError: the server did not answer OK.
        """
        self._require_state("authenticate", MailboxState.CONNECTED)
        command = f"LOGIN {quote_imap_string(username)} {quote_imap_string(password)}"
        response = self._command(command, log_as="LOGIN <redacted>")
        if not response.ok:
            raise AuthError(f"Login failed: {response.describe()}")
        self.state = MailboxState.AUTHENTICATED

    def select_mailbox(self, name: str) -> MailboxInfo:
        """SELECT a mailbox; an empty mailbox is a normal result.

        Raises:
            ProtocolError: selection failed (e.g. mailbox does not exist).
        """
        self._require_state("select", MailboxState.AUTHENTICATED, MailboxState.SELECTED)
        response = self._command(f"SELECT {quote_imap_string(name)}")
        if not response.ok:
            self.state = MailboxState.AUTHENTICATED
            raise ProtocolError(f"Select {name} failed: {response.describe()}")

        exists = 0
        uidvalidity = None
        for line in response.untagged:
            match = _EXISTS_RE.match(line.text)
            if match:
                exists = int(match.group(1))
                continue
            match = _UIDVALIDITY_RE.search(line.text)
            if match:
                uidvalidity = int(match.group(1))
        self.state = MailboxState.SELECTED
        logger.info("Selected mailbox %s (%d messages)", name, exists)
        return MailboxInfo(name=name, exists=exists, uidvalidity=uidvalidity)

    def search(self, criteria: SearchCriteria) -> Iterator[str]:
        """SEARCH and return sequence numbers in server order."""
        self._require_state("search", MailboxState.SELECTED)
        response = self._command(f"SEARCH {criteria.to_imap()}")
        if not response.ok:
            raise ProtocolError(f"Search failed: {response.describe()}")
        ids: list[str] = []
        for line in response.untagged:
            if line.text.upper().startswith("* SEARCH"):
                ids.extend(token for token in line.text[len("* SEARCH"):].split() if token.isdigit())
        return iter(ids)

    def fetch(self, identifier: str, options: FetchOptions = HEADERS_ONLY) -> FetchedMessage:
        """FETCH flags plus headers or the full message (peek unless asked)."""
        self._require_state("fetch", MailboxState.SELECTED)
        sequence = validate_sequence(identifier)
        response = self._command(f"FETCH {sequence} {options.to_imap()}")
        if not response.ok:
            raise ProtocolError(f"Fetch {sequence} failed: {response.describe()}")

        for line in response.untagged:
            match = _FETCH_RE.match(line.text)
            if not match or match.group(1) != sequence:
                continue
            if line.literals:
                payload = line.literals[0]
            elif _NIL_SECTION_RE.search(line.text):
                payload = b""
            elif options.body or options.headers:
                continue
            else:
                payload = None
            message = FetchedMessage(sequence=sequence, flags=parse_flags(line.text))
            if options.body:
                message.raw = payload
            elif options.headers:
                message.header_bytes = payload
            return message
        raise ProtocolError(f"No FETCH data returned for message {sequence}")

    def mark_read(self, identifier: str) -> bool:
        """Set \\Seen. Never raises; failures are logged and reported as False."""
        try:
            self._require_state("mark_read", MailboxState.SELECTED)
            sequence = validate_sequence(identifier)
            response = self._command(f"STORE {sequence} +FLAGS (\\Seen)")
        except Exception as exc:
            logger.warning("Failed to mark message %s as read: %s", identifier, exc)
            return False
        if not response.ok:
            logger.warning(
                "Server refused to mark message %s as read: %s",
                identifier,
                response.describe(),
            )
            return False
        return True

    def disconnect(self) -> None:
        """LOGOUT (best effort) and close the transport. Safe to call twice."""
        if self._transport is None:
            self.state = MailboxState.DISCONNECTED
            return
        try:
            if self.state is not MailboxState.DISCONNECTED:
                self._command("LOGOUT")
        except MailError as exc:
            logger.debug("IMAP logout failed: %s", exc)
        finally:
            self._close_transport()

    def _close_transport(self) -> None:
        if self._transport is not None:
            self._transport.close()
        self._transport = None
        self.state = MailboxState.DISCONNECTED

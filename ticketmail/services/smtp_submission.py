"""Minimal SMTP submission client (one message, one recipient per call).

Handshake: greeting → EHLO → STARTTLS → EHLO → AUTH PLAIN → MAIL FROM →
RCPT TO → DATA → message body → QUIT. Every reply is checked against the
expected status prefix; the first mismatch raises ``SubmissionError``
naming the step. The connection is closed on every exit path.
"""

from __future__ import annotations

import base64
import logging
from email.header import Header
from email.utils import formatdate, make_msgid
from typing import Protocol

from ticketmail.core.structured_logging import build_log_context, mask_email
from ticketmail.services.mail_config import SubmissionConfig
from ticketmail.services.mail_errors import MailConnectionError, SubmissionError
from ticketmail.services.mail_transport import Transport, TransportFactory, open_socket_transport

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465

STEP_GREETING = "greeting"
STEP_EHLO = "EHLO"
STEP_STARTTLS = "STARTTLS"
STEP_EHLO_AFTER_TLS = "EHLO-after-TLS"
STEP_AUTH = "AUTH"
STEP_MAIL_FROM = "MAIL FROM"
STEP_RCPT_TO = "RCPT TO"
STEP_DATA = "DATA"
STEP_MESSAGE_BODY = "message body"


class MailSubmitter(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        """Deliver one plain-text message or raise SubmissionError."""


def _clean_header(value: str) -> str:
    return " ".join(value.replace("\r", " ").replace("\n", " ").split())


def _encode_subject(subject: str) -> str:
    subject = _clean_header(subject)
    if subject.isascii():
        return subject
    return Header(subject, "utf-8").encode()


def _validate_address(address: str, step: str) -> str:
    address = address.strip()
    if not address or any(ch in address for ch in "\r\n<>") or "@" not in address:
        raise SubmissionError(step, f"invalid address {address!r}")
    return address


def build_message(*, sender: str, to: str, subject: str, body: str) -> str:
    """Render headers + body for the DATA phase (dot-stuffed, CRLF, terminated)."""
    domain = sender.rpartition("@")[2] or None
    lines = [
        f"From: {sender}",
        f"To: {to}",
        f"Subject: {_encode_subject(subject)}",
        f"Date: {formatdate(localtime=False, usegmt=True)}",
        f"Message-ID: {make_msgid(domain=domain)}",
        "MIME-Version: 1.0",
        "Content-Type: text/plain; charset=utf-8",
        "Content-Transfer-Encoding: 8bit",
        "",
    ]
    for line in body.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        lines.append(f".{line}" if line.startswith(".") else line)
    lines.append(".")
    return "\r\n".join(lines) + "\r\n"


class SmtpSubmissionClient:
    """Short-lived client; construct one per message with explicit config."""

    def __init__(
        self,
        config: SubmissionConfig,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.config = config
        self._transport_factory = transport_factory or open_socket_transport

    def _read_reply(self, transport: Transport, step: str) -> tuple[str, str]:
        lines: list[str] = []
        try:
            while True:
                line = transport.readline().decode("utf-8", errors="replace").rstrip("\r\n")
                lines.append(line)
                # "250-..." continues a multi-line reply; "250 ..." ends it.
                if len(line) < 4 or line[3] != "-":
                    break
        except MailConnectionError as exc:
            raise SubmissionError(step, str(exc)) from exc
        return lines[-1][:3], "\n".join(lines)

    def _expect(
        self,
        transport: Transport,
        command: str | None,
        expected: tuple[str, ...],
        step: str,
        *,
        log_as: str | None = None,
    ) -> str:
        if command is not None:
            logger.debug("SMTP > %s", log_as or command)
            try:
                transport.write(f"{command}\r\n".encode("utf-8"))
            except MailConnectionError as exc:
                raise SubmissionError(step, str(exc)) from exc
        code, reply = self._read_reply(transport, step)
        if code not in expected:
            raise SubmissionError(step, reply)
        return reply

    def _send_payload(self, transport: Transport, payload: str) -> None:
        logger.debug("SMTP > <message body, %d bytes>", len(payload))
        try:
            transport.write(payload.encode("utf-8"))
        except MailConnectionError as exc:
            raise SubmissionError(STEP_MESSAGE_BODY, str(exc)) from exc
        code, reply = self._read_reply(transport, STEP_MESSAGE_BODY)
        if code != "250":
            raise SubmissionError(STEP_MESSAGE_BODY, reply)

    def send(self, to: str, subject: str, body: str) -> None:
        """Deliver one message to one recipient.

        Raises:
            SubmissionError: naming the handshake step that failed.
        """
        config = self.config
        sender = _validate_address(config.sender, STEP_MAIL_FROM)
        recipient = _validate_address(to, STEP_RCPT_TO)
        implicit_tls = config.port == IMPLICIT_TLS_PORT

        try:
            transport = self._transport_factory(
                config.host, config.port, timeout=config.timeout, use_tls=implicit_tls
            )
        except MailConnectionError as exc:
            raise SubmissionError(STEP_GREETING, str(exc)) from exc

        completed = False
        try:
            self._expect(transport, None, ("220",), STEP_GREETING)
            self._expect(transport, f"EHLO {config.helo_name}", ("250",), STEP_EHLO)
            if config.use_starttls and not implicit_tls:
                self._expect(transport, "STARTTLS", ("220",), STEP_STARTTLS)
                try:
                    transport.start_tls(config.host)
                except MailConnectionError as exc:
                    raise SubmissionError(STEP_STARTTLS, str(exc)) from exc
                self._expect(
                    transport, f"EHLO {config.helo_name}", ("250",), STEP_EHLO_AFTER_TLS
                )

            token = base64.b64encode(
                f"\0{config.username}\0{config.password}".encode("utf-8")
            ).decode("ascii")
            self._expect(
                transport,
                f"AUTH PLAIN {token}",
                ("235",),
                STEP_AUTH,
                log_as="AUTH PLAIN <redacted>",
            )
            self._expect(transport, f"MAIL FROM:<{sender}>", ("250",), STEP_MAIL_FROM)
            self._expect(transport, f"RCPT TO:<{recipient}>", ("250", "251"), STEP_RCPT_TO)
            self._expect(transport, "DATA", ("354",), STEP_DATA)
            self._send_payload(
                transport,
                build_message(sender=sender, to=recipient, subject=subject, body=body),
            )
            completed = True
        finally:
            self._quit(transport, graceful=completed)

        logger.info(
            "Sent mail to %s via %s",
            mask_email(recipient),
            config.host,
            extra=build_log_context(step="sent"),
        )

    def _quit(self, transport: Transport, *, graceful: bool) -> None:
        try:
            transport.write(b"QUIT\r\n")
            if graceful:
                self._read_reply(transport, "QUIT")
        except (MailConnectionError, SubmissionError) as exc:
            logger.debug("SMTP QUIT failed: %s", exc)
        finally:
            transport.close()


def send_plain_text(config: SubmissionConfig, *, to: str, subject: str, body: str) -> None:
    """Send one message with a fresh client instance."""
    SmtpSubmissionClient(config).send(to, subject, body)

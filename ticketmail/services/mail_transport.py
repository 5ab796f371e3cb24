"""Blocking line-oriented socket transport shared by the IMAP and SMTP clients."""

from __future__ import annotations

import logging
import socket
import ssl
from typing import Protocol

from ticketmail.services.mail_errors import MailConnectionError

logger = logging.getLogger(__name__)

# Longest line accepted from a server before we treat the stream as broken.
MAX_LINE_BYTES = 1024 * 1024


class Transport(Protocol):
    def readline(self) -> bytes:
        """Return the next CRLF-terminated line (terminator included)."""

    def read(self, size: int) -> bytes:
        """Return exactly ``size`` bytes."""

    def write(self, data: bytes) -> None: ...

    def start_tls(self, hostname: str) -> None:
        """Upgrade the open connection to TLS in place."""

    def close(self) -> None: ...


class TransportFactory(Protocol):
    def __call__(
        self, host: str, port: int, *, timeout: float, use_tls: bool
    ) -> Transport: ...


class SocketTransport:
    """Socket transport with a per-operation timeout.

    The timeout given at open applies to every blocking read and write,
    so an unresponsive server surfaces as ``MailConnectionError`` instead
    of hanging the caller.
    """

    def __init__(self, sock: socket.socket, *, ssl_context: ssl.SSLContext | None = None) -> None:
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._ssl_context = ssl_context

    @classmethod
    def open(
        cls,
        host: str,
        port: int,
        *,
        timeout: float,
        use_tls: bool,
        ssl_context: ssl.SSLContext | None = None,
    ) -> "SocketTransport":
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise MailConnectionError(f"Could not connect to {host}:{port}: {exc}") from exc
        if use_tls:
            context = ssl_context or ssl.create_default_context()
            try:
                sock = context.wrap_socket(sock, server_hostname=host)
            except OSError as exc:
                sock.close()
                raise MailConnectionError(f"TLS handshake with {host}:{port} failed: {exc}") from exc
        return cls(sock, ssl_context=ssl_context)

    def readline(self) -> bytes:
        try:
            line = self._reader.readline(MAX_LINE_BYTES + 1)
        except OSError as exc:
            raise MailConnectionError(f"Read failed: {exc}") from exc
        if not line:
            raise MailConnectionError("Connection closed by server")
        if len(line) > MAX_LINE_BYTES:
            raise MailConnectionError("Server line exceeds maximum length")
        return line

    def read(self, size: int) -> bytes:
        chunks: list[bytes] = []
        remaining = size
        while remaining > 0:
            try:
                chunk = self._reader.read(remaining)
            except OSError as exc:
                raise MailConnectionError(f"Read failed: {exc}") from exc
            if not chunk:
                raise MailConnectionError("Connection closed by server")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def write(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise MailConnectionError(f"Write failed: {exc}") from exc

    def start_tls(self, hostname: str) -> None:
        context = self._ssl_context or ssl.create_default_context()
        self._reader.close()
        try:
            self._sock = context.wrap_socket(self._sock, server_hostname=hostname)
        except OSError as exc:
            raise MailConnectionError(f"TLS upgrade failed: {exc}") from exc
        self._reader = self._sock.makefile("rb")

    def close(self) -> None:
        for closeable in (self._reader, self._sock):
            try:
                closeable.close()
            except OSError:
                logger.debug("Error closing mail transport", exc_info=True)


def open_socket_transport(host: str, port: int, *, timeout: float, use_tls: bool) -> Transport:
    return SocketTransport.open(host, port, timeout=timeout, use_tls=use_tls)

"""Error taxonomy for the mailbox and mail-submission clients.

Retry guidance:
- MailConnectionError: transport-level, retryable by the caller.
- AuthError: credential failure, needs operator action.
- ProtocolError: unexpected server response, terminates the run.
- DecodeError: malformed encoded content, local to one message.
- SubmissionError: a named SMTP handshake step failed.
"""

from __future__ import annotations


class MailError(Exception):
    """Base exception for mail pipeline errors."""

    pass


class ConfigurationError(MailError):
    """Raised when a required configuration variable is missing or invalid."""

    pass


class MailConnectionError(MailError, ConnectionError):
    """Transport failure (DNS, TCP, TLS, timeout, connection closed)."""

    pass


class AuthError(MailError):
    """Server rejected the supplied credentials."""

    pass


class ProtocolError(MailError):
    """Server answered with an unexpected or failing response."""

    pass


class DecodeError(MailError, ValueError):
    """Encoded content could not be decoded."""

    pass


class SubmissionError(MailError):
    """SMTP submission failed at a named handshake step."""

    def __init__(self, step: str, reply: str = "") -> None:
        self.step = step
        self.reply = reply.strip()
        message = f"{step} failed"
        if self.reply:
            message = f"{message}: {self.reply}"
        super().__init__(message)

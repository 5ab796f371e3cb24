"""Validated connection settings for the protocol clients.

Each client is built from an explicit config object rather than reading
process state itself; ``from_settings`` fails fast, naming the first
missing variable, before any network attempt.
"""

from __future__ import annotations

from dataclasses import dataclass

from ticketmail.core.config import Settings, settings as app_settings
from ticketmail.services.mail_errors import ConfigurationError

MAILBOX_BACKENDS = ("native", "imaplib")


def _require(values: dict[str, object]) -> None:
    for name, value in values.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ConfigurationError(f"Missing required configuration: {name}")


@dataclass(frozen=True)
class MailboxConfig:
    host: str
    port: int
    username: str
    password: str
    use_tls: bool = True
    mailbox: str = "INBOX"
    backend: str = "native"
    timeout: float = 60.0
    ticket_marker: str = "[TICKET]"
    max_messages: int = 50

    def __repr__(self) -> str:
        return (
            f"MailboxConfig(host={self.host!r}, port={self.port}, "
            f"use_tls={self.use_tls}, mailbox={self.mailbox!r}, backend={self.backend!r})"
        )

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "MailboxConfig":
        s = source or app_settings
        _require(
            {
                "MAILBOX_HOST": s.MAILBOX_HOST,
                "MAILBOX_PORT": s.MAILBOX_PORT,
                "MAILBOX_USERNAME": s.MAILBOX_USERNAME,
                "MAILBOX_PASSWORD": s.MAILBOX_PASSWORD,
            }
        )
        backend = (s.MAILBOX_BACKEND or "native").strip().lower()
        if backend not in MAILBOX_BACKENDS:
            raise ConfigurationError(
                f"Invalid MAILBOX_BACKEND {backend!r}; expected one of {', '.join(MAILBOX_BACKENDS)}"
            )
        return cls(
            host=s.MAILBOX_HOST.strip(),
            port=int(s.MAILBOX_PORT),
            username=s.MAILBOX_USERNAME,
            password=s.MAILBOX_PASSWORD,
            use_tls=s.MAILBOX_USE_TLS,
            mailbox=s.MAILBOX_NAME or "INBOX",
            backend=backend,
            timeout=s.MAIL_NETWORK_TIMEOUT_SECONDS,
            ticket_marker=s.TICKET_MARKER,
            max_messages=s.EMAIL_SYNC_MAX_MESSAGES,
        )


@dataclass(frozen=True)
class SubmissionConfig:
    host: str
    port: int
    username: str
    password: str
    sender: str
    use_starttls: bool = True
    helo_name: str = "localhost"
    timeout: float = 60.0

    def __repr__(self) -> str:
        return (
            f"SubmissionConfig(host={self.host!r}, port={self.port}, "
            f"use_starttls={self.use_starttls})"
        )

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "SubmissionConfig":
        s = source or app_settings
        _require(
            {
                "SMTP_HOST": s.SMTP_HOST,
                "SMTP_PORT": s.SMTP_PORT,
                "SMTP_USERNAME": s.SMTP_USERNAME,
                "SMTP_PASSWORD": s.SMTP_PASSWORD,
            }
        )
        return cls(
            host=s.SMTP_HOST.strip(),
            port=int(s.SMTP_PORT),
            username=s.SMTP_USERNAME,
            password=s.SMTP_PASSWORD,
            sender=s.smtp_sender,
            use_starttls=s.SMTP_USE_STARTTLS,
            helo_name=s.SMTP_HELO_NAME or "localhost",
            timeout=s.MAIL_NETWORK_TIMEOUT_SECONDS,
        )

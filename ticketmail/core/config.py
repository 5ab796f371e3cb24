"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str = "sqlite:///./ticketmail.db"

    # Mailbox (IMAP) used for ticket ingestion
    MAILBOX_HOST: str = ""
    MAILBOX_PORT: int = 993
    MAILBOX_USE_TLS: bool = True
    MAILBOX_USERNAME: str = ""
    MAILBOX_PASSWORD: str = ""
    MAILBOX_NAME: str = "INBOX"
    MAILBOX_BACKEND: str = "native"  # native | imaplib

    # Mail submission (SMTP) used for completion notices
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""  # Falls back to SMTP_USERNAME if empty
    SMTP_USE_STARTTLS: bool = True
    SMTP_HELO_NAME: str = "localhost"

    # Ingestion
    TICKET_MARKER: str = "[TICKET]"
    EMAIL_SYNC_MAX_MESSAGES: int = 50
    MAIL_NETWORK_TIMEOUT_SECONDS: float = 60.0

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_EMAIL_SYNC: int = 6
    RATE_LIMIT_API: int = 60

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def smtp_sender(self) -> str:
        return self.SMTP_FROM or self.SMTP_USERNAME


settings = Settings()

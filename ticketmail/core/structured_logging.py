"""Structured logging helpers (credential-safe)."""

from typing import Any


def build_log_context(
    *,
    run_id: str | None = None,
    ticket_id: str | None = None,
    mailbox: str | None = None,
    message_id: str | None = None,
    sequence: str | None = None,
    step: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict containing only the provided fields."""
    context: dict[str, Any] = {}
    if run_id:
        context["run_id"] = run_id
    if ticket_id:
        context["ticket_id"] = ticket_id
    if mailbox:
        context["mailbox"] = mailbox
    if message_id:
        context["message_id"] = message_id
    if sequence:
        context["sequence"] = sequence
    if step:
        context["step"] = step
    return context


def mask_email(email: str | None) -> str:
    """Shorten an address for logs (``abc...@example.com``)."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."

"""Rate limiting configuration for the ticketmail API."""

import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from ticketmail.core.config import settings

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=STORAGE_URI,
    default_limits=DEFAULT_LIMITS,
    enabled=not IS_TESTING,
)

EMAIL_SYNC_LIMIT = f"{max(settings.RATE_LIMIT_EMAIL_SYNC, 1)}/minute"

"""Ticketing and email-sync enums."""

from enum import Enum


class TicketStatus(str, Enum):
    """Ticket lifecycle status."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class TicketPriority(str, Enum):
    """Ticket priority level."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class SyncRunStatus(str, Enum):
    """
    Email sync run status.

    RUNNING is the only non-terminal state; COMPLETED and FAILED are final.
    """

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncRunStatus.RUNNING


DEFAULT_TICKET_STATUS = TicketStatus.OPEN
DEFAULT_TICKET_PRIORITY = TicketPriority.MEDIUM

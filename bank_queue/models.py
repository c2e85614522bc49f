"""Domain records for the branch queue.

Records are frozen dataclasses. Stores never mutate a record in place; they
build a new version with `dataclasses.replace` and swap it in, so a snapshot
handed to a caller (or to an event subscriber) never changes underneath it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


class ServiceType(enum.Enum):
    DEPOSIT = 0
    WITHDRAWAL = 1
    LOAN = 2
    CONSULTATION = 3
    VIP = 4


class TicketStatus(enum.Enum):
    WAITING = 0
    CALLED = 1
    SERVING = 2
    COMPLETED = 3
    MISSED = 4
    # Kept for wire compatibility; transfers put the ticket back to WAITING.
    TRANSFERRED = 5


TERMINAL_STATUSES = frozenset({TicketStatus.COMPLETED, TicketStatus.MISSED})
ACTIVE_STATUSES = frozenset({TicketStatus.CALLED, TicketStatus.SERVING})


class CustomerSegment(enum.Enum):
    REGULAR = 0
    GOLD = 1
    DIAMOND = 2


class CounterStatus(enum.Enum):
    ONLINE = 0
    OFFLINE = 1
    PAUSED = 2


class AssignmentAction(enum.Enum):
    ASSIGNED = "ASSIGNED"
    REASSIGNED = "REASSIGNED"
    UNASSIGNED = "UNASSIGNED"


class StaffRole(enum.Enum):
    ADMIN = "ADMIN"
    TELLER = "TELLER"
    MANAGER = "MANAGER"


@dataclass(frozen=True)
class Customer:
    id: str | None = None
    name: str | None = None
    segment: CustomerSegment = CustomerSegment.REGULAR
    phone: str | None = None
    email: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class Remark:
    text: str
    created_time: datetime


@dataclass(frozen=True)
class Feedback:
    rating: int
    submitted_time: datetime
    comment: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Ticket:
    id: str
    number: str
    service_type: ServiceType
    status: TicketStatus
    created_time: datetime
    priority_score: int
    sequence: int
    branch_id: str | None = None
    counter_id: str | None = None
    called_time: datetime | None = None
    completed_time: datetime | None = None
    requeued_time: datetime | None = None
    recall_count: int = 0
    moved_to_end_count: int = 0
    customer: Customer | None = None
    remarks: tuple[Remark, ...] = ()
    served_by_user_id: str | None = None
    is_booking: bool = False
    feedback: Feedback | None = None
    version: int = 1

    @property
    def wait_started(self) -> datetime:
        """When the ticket (re)joined the pool, for ordering."""
        return self.requeued_time or self.created_time

    @property
    def segment(self) -> CustomerSegment:
        return self.customer.segment if self.customer else CustomerSegment.REGULAR


@dataclass(frozen=True)
class Counter:
    id: str
    name: str
    branch_id: str | None
    status: CounterStatus = CounterStatus.OFFLINE
    service_tags: frozenset[ServiceType] = field(default_factory=frozenset)
    current_ticket_id: str | None = None
    last_served_ticket_id: str | None = None
    assigned_user_id: str | None = None
    version: int = 1

    def can_serve(self, service_type: ServiceType) -> bool:
        # A VIP tag covers VIP tickets whatever else is tagged; there is no
        # wildcard tag.
        return service_type in self.service_tags


@dataclass(frozen=True)
class Branch:
    id: str
    name: str
    timezone: str = "UTC"
    active: bool = True


@dataclass(frozen=True)
class StaffMember:
    id: str
    full_name: str
    email: str | None = None
    role: StaffRole = StaffRole.TELLER
    branch_id: str | None = None


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation, as supplied by the identity provider."""

    user_id: str
    full_name: str
    role: StaffRole = StaffRole.ADMIN
    branch_id: str | None = None


@dataclass(frozen=True)
class CounterAssignmentAuditEntry:
    id: str
    counter_id: str
    counter_name: str
    action: AssignmentAction
    timestamp: datetime
    branch_id: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    user_email: str | None = None
    previous_user_id: str | None = None
    previous_user_name: str | None = None
    performed_by_user_id: str | None = None
    performed_by_user_name: str | None = None
    reason: str | None = None
    ip_address: str | None = None

"""Ticket store: records, the lifecycle state machine, derived fields.

Every write goes through `_mutate`, which holds the ticket's own lock, checks
an optional expected version (optimistic concurrency), persists the new
version and only then swaps it into memory.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from .config import QueueConfig
from .errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .locks import KeyedLocks
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Customer,
    CustomerSegment,
    Feedback,
    Remark,
    ServiceType,
    Ticket,
    TicketStatus,
)
from .persistence import Persistence
from .registry import BranchRegistry
from .sequencing import TicketNumberer

log = logging.getLogger(__name__)

W, C, S = TicketStatus.WAITING, TicketStatus.CALLED, TicketStatus.SERVING

# edge -> statuses it may leave from
TRANSITIONS: dict[str, frozenset[TicketStatus]] = {
    "call": frozenset({W}),
    "begin_service": frozenset({C}),
    "recall": frozenset({C, S}),
    "complete": frozenset({S}),
    "transfer": frozenset({C, S}),
    "move_to_end": frozenset({C, S}),
    "missed": frozenset({W}),
}


def ordering_key(ticket: Ticket) -> tuple[int, datetime, int]:
    """Highest priority first, then longest waiting, then issue order."""
    return (-ticket.priority_score, ticket.wait_started, ticket.sequence)


def same_branch_scope(a: str | None, b: str | None) -> bool:
    return a is None or b is None or a == b


class TicketStore:
    def __init__(
        self,
        *,
        config: QueueConfig,
        numberer: TicketNumberer,
        branches: BranchRegistry,
        persistence: Persistence,
        clock: Callable[[], datetime],
        initial: list[Ticket] | None = None,
    ) -> None:
        self._config = config
        self._numberer = numberer
        self._branches = branches
        self._persistence = persistence
        self._clock = clock

        self._ticket_locks = KeyedLocks()
        self._lock = threading.Lock()
        self._tickets: dict[str, Ticket] = {t.id: t for t in initial or []}
        self._sequence = max((t.sequence for t in self._tickets.values()), default=0)

    # -------------------- reads --------------------

    def get(self, ticket_id: str) -> Ticket:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
        if ticket is None:
            raise NotFoundError("unknown ticket", entity="ticket", entity_id=ticket_id)
        return ticket

    def snapshot(self, status: TicketStatus | None = None) -> list[Ticket]:
        with self._lock:
            tickets = list(self._tickets.values())
        if status is not None:
            tickets = [t for t in tickets if t.status is status]
        return tickets

    def list(
        self,
        *,
        status: TicketStatus | None = None,
        service_type: ServiceType | None = None,
        branch_id: str | None = None,
        staff_id: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[Ticket]:
        out = []
        for t in self.snapshot(status):
            if service_type is not None and t.service_type is not service_type:
                continue
            if branch_id is not None and t.branch_id != branch_id:
                continue
            if staff_id is not None and t.served_by_user_id != staff_id:
                continue
            if from_time is not None and t.created_time < from_time:
                continue
            if to_time is not None and t.created_time > to_time:
                continue
            out.append(t)
        out.sort(key=ordering_key)
        return out

    # -------------------- creation --------------------

    def create(
        self,
        service_type: ServiceType,
        branch_id: str | None,
        customer: Customer | None = None,
        *,
        is_booking: bool = False,
    ) -> Ticket:
        if not isinstance(service_type, ServiceType):
            raise ValidationError(f"unknown service_type: {service_type!r}")
        self._branches.require_active(branch_id)

        now = self._clock()
        number = self._numberer.next_number(service_type, branch_id, now)
        segment = customer.segment if customer else None
        with self._lock:
            self._sequence += 1
            seq = self._sequence

        ticket = Ticket(
            id=uuid.uuid4().hex,
            number=number,
            service_type=service_type,
            status=TicketStatus.WAITING,
            created_time=now,
            priority_score=self._priority(service_type, customer),
            sequence=seq,
            branch_id=branch_id,
            customer=customer,
            is_booking=is_booking,
        )
        self._persistence.save_ticket(ticket)
        with self._lock:
            self._tickets[ticket.id] = ticket
        log.info("issued %s (%s, segment=%s, priority=%d, branch=%s)",
                 number, service_type.name, segment.name if segment else "-", ticket.priority_score, branch_id)
        return ticket

    def _priority(self, service_type: ServiceType, customer: Customer | None) -> int:
        return self._config.priority_for(service_type, customer.segment if customer else CustomerSegment.REGULAR)

    # -------------------- lifecycle edges --------------------

    def call(
        self,
        ticket_id: str,
        counter_id: str,
        *,
        expected_version: int | None = None,
        served_by_user_id: str | None = None,
    ) -> Ticket:
        def apply(t: Ticket) -> Ticket:
            _require(t, "call")
            if t.counter_id is not None and t.counter_id != counter_id:
                raise InvalidTransitionError("ticket is pinned to another counter", entity="ticket", entity_id=t.id)
            return replace(
                t,
                status=C,
                counter_id=counter_id,
                called_time=self._clock(),
                served_by_user_id=served_by_user_id,
            )

        return self._mutate(ticket_id, apply, expected_version)

    def begin_service(self, ticket_id: str, *, expected_version: int | None = None) -> Ticket:
        def apply(t: Ticket) -> Ticket:
            _require(t, "begin_service")
            return replace(t, status=S)

        return self._mutate(ticket_id, apply, expected_version)

    def recall(self, ticket_id: str, *, expected_version: int | None = None) -> Ticket:
        def apply(t: Ticket) -> Ticket:
            _require(t, "recall")
            return replace(t, recall_count=t.recall_count + 1)

        return self._mutate(ticket_id, apply, expected_version)

    def complete(self, ticket_id: str, *, expected_version: int | None = None) -> Ticket:
        def apply(t: Ticket) -> Ticket:
            _require(t, "complete")
            return replace(t, status=TicketStatus.COMPLETED, completed_time=self._clock())

        return self._mutate(ticket_id, apply, expected_version)

    def transfer(
        self,
        ticket_id: str,
        new_service: ServiceType,
        *,
        target_counter_id: str | None = None,
        expected_version: int | None = None,
    ) -> Ticket:
        if not isinstance(new_service, ServiceType):
            raise ValidationError(f"unknown service_type: {new_service!r}")

        def apply(t: Ticket) -> Ticket:
            _require(t, "transfer")
            return replace(
                t,
                status=W,
                service_type=new_service,
                counter_id=target_counter_id,
                called_time=None,
                priority_score=self._priority(new_service, t.customer),
                recall_count=0,
            )

        return self._mutate(ticket_id, apply, expected_version)

    def move_to_end(self, ticket_id: str, reason: str, *, expected_version: int | None = None) -> Ticket:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("move-to-end needs a reason", entity="ticket", entity_id=ticket_id)

        def apply(t: Ticket) -> Ticket:
            _require(t, "move_to_end")
            now = self._clock()
            # Floor over every waiting ticket in the branch: a counter may serve
            # several services, so any of them can compete with this one.
            rivals = [
                o.priority_score
                for o in self.snapshot(W)
                if o.id != t.id and same_branch_scope(o.branch_id, t.branch_id)
            ]
            score = min([t.priority_score, *rivals])
            return replace(
                t,
                status=W,
                counter_id=None,
                called_time=None,
                requeued_time=now,
                priority_score=score,
                moved_to_end_count=t.moved_to_end_count + 1,
                remarks=t.remarks + (Remark(text=f"Moved to end: {reason}", created_time=now),),
            )

        return self._mutate(ticket_id, apply, expected_version)

    def missed(self, ticket_id: str, *, expected_version: int | None = None) -> Ticket:
        def apply(t: Ticket) -> Ticket:
            _require(t, "missed")
            return replace(t, status=TicketStatus.MISSED, counter_id=None)

        return self._mutate(ticket_id, apply, expected_version)

    # -------------------- annotations --------------------

    def append_remark(self, ticket_id: str, text: str) -> Ticket:
        text = (text or "").strip()
        if not text:
            raise ValidationError("remark text is empty", entity="ticket", entity_id=ticket_id)

        def apply(t: Ticket) -> Ticket:
            if t.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"cannot add remarks to a {t.status.name} ticket", entity="ticket", entity_id=t.id
                )
            return replace(t, remarks=t.remarks + (Remark(text=text, created_time=self._clock()),))

        return self._mutate(ticket_id, apply)

    def update_customer_info(
        self,
        ticket_id: str,
        *,
        phone: str | None = None,
        email: str | None = None,
        note: str | None = None,
    ) -> Ticket:
        def apply(t: Ticket) -> Ticket:
            if t.status is TicketStatus.MISSED:
                raise InvalidTransitionError("ticket was missed", entity="ticket", entity_id=t.id)
            customer = t.customer or Customer()
            changes = {k: v for k, v in (("phone", phone), ("email", email), ("note", note)) if v is not None}
            return replace(t, customer=replace(customer, **changes))

        return self._mutate(ticket_id, apply)

    def submit_feedback(
        self,
        ticket_id: str,
        rating: int,
        *,
        comment: str | None = None,
        tags: tuple[str, ...] = (),
    ) -> Ticket:
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer from 1 to 5", entity="ticket", entity_id=ticket_id)

        def apply(t: Ticket) -> Ticket:
            if t.status is not TicketStatus.COMPLETED:
                raise InvalidTransitionError("feedback needs a completed ticket", entity="ticket", entity_id=t.id)
            if t.feedback is not None:
                raise InvalidTransitionError("feedback already submitted", entity="ticket", entity_id=t.id)
            fb = Feedback(rating=rating, comment=comment, tags=tuple(tags), submitted_time=self._clock())
            return replace(t, feedback=fb)

        return self._mutate(ticket_id, apply)

    def transition(self, ticket_id: str, edge: str, *args, **fields) -> Ticket:
        """Apply a state machine edge by name, e.g. ``transition(tid, "call", "C1")``."""
        if edge not in TRANSITIONS:
            raise ValidationError(f"unknown transition: {edge!r}", entity="ticket", entity_id=ticket_id)
        return getattr(self, edge)(ticket_id, *args, **fields)

    def restore(self, previous: Ticket) -> Ticket:
        """Write `previous` back as the newest version.

        Used to undo a transition when the matching counter write failed.
        """
        with self._ticket_locks.hold(previous.id):
            current = self.get(previous.id)
            restored = replace(previous, version=current.version + 1)
            self._persistence.save_ticket(restored)
            with self._lock:
                self._tickets[previous.id] = restored
            return restored

    # -------------------- internals --------------------

    def _mutate(self, ticket_id: str, apply: Callable[[Ticket], Ticket], expected_version: int | None = None) -> Ticket:
        with self._ticket_locks.hold(ticket_id):
            current = self.get(ticket_id)
            if expected_version is not None and current.version != expected_version:
                raise ConflictError("ticket changed concurrently", entity="ticket", entity_id=ticket_id)
            updated = replace(apply(current), version=current.version + 1)
            check_invariants(updated)
            self._persistence.save_ticket(updated)
            with self._lock:
                self._tickets[ticket_id] = updated
            return updated


def _require(ticket: Ticket, edge: str) -> None:
    if ticket.status not in TRANSITIONS[edge]:
        raise InvalidTransitionError(
            f"cannot {edge.replace('_', ' ')} a {ticket.status.name} ticket", entity="ticket", entity_id=ticket.id
        )


def check_invariants(t: Ticket) -> None:
    """Raise RuntimeError if a record breaks the lifecycle field rules."""
    problems = []
    # MISSED is only reachable from WAITING, so it never carries a called_time.
    if t.status is W and t.called_time is not None:
        problems.append("waiting ticket has a called_time")
    if t.status not in (W, TicketStatus.MISSED) and t.called_time is None:
        problems.append("called ticket has no called_time")
    if (t.completed_time is not None) != (t.status is TicketStatus.COMPLETED):
        problems.append("completed_time does not match status")
    if t.status in ACTIVE_STATUSES and t.counter_id is None:
        problems.append("active ticket has no counter")
    if problems:
        raise RuntimeError(f"ticket {t.number} ({t.status.name}): {'; '.join(problems)}")

"""Dispatch engine: which waiting ticket a counter serves next.

Selection is done against a snapshot of the waiting pool and the claim is a
compare-and-swap on the chosen ticket's version. If another counter claimed
it first the engine takes a fresh snapshot and tries the next head, so losing
a race is never visible to the teller while eligible tickets remain.

Lock order is always counter operation lock -> ticket lock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .codec import counter_to_message, ticket_to_message
from .config import QueueConfig
from .counters import CounterStore
from .errors import ConflictError, DependencyUnavailableError, InvalidTransitionError, ValidationError
from .events import EventBus, EventKind
from .models import ACTIVE_STATUSES, Counter, CounterStatus, ServiceType, Ticket, TicketStatus
from .tickets import TicketStore, ordering_key, same_branch_scope

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallResult:
    ticket: Ticket
    counter: Counter


def is_eligible(ticket: Ticket, counter: Counter) -> bool:
    return (
        ticket.status is TicketStatus.WAITING
        and same_branch_scope(ticket.branch_id, counter.branch_id)
        and counter.can_serve(ticket.service_type)
        and ticket.counter_id in (None, counter.id)
    )


class DispatchEngine:
    def __init__(self, *, tickets: TicketStore, counters: CounterStore, bus: EventBus, config: QueueConfig) -> None:
        self.tickets = tickets
        self.counters = counters
        self.bus = bus
        self.config = config

    # -------------------- selection --------------------

    def candidates(self, counter: Counter) -> list[Ticket]:
        """Waiting tickets this counter may serve, best first."""
        pool = [t for t in self.tickets.snapshot(TicketStatus.WAITING) if is_eligible(t, counter)]
        pool.sort(key=ordering_key)
        return pool

    def call_next(self, counter_id: str) -> CallResult | None:
        """Claim the best eligible ticket for a counter; None if nothing is waiting."""
        self.counters.get(counter_id)
        with self.counters.hold(counter_id):
            counter = self.counters.get(counter_id)
            if counter.status is not CounterStatus.ONLINE:
                raise InvalidTransitionError(
                    f"counter is {counter.status.name}", entity="counter", entity_id=counter_id
                )
            if counter.current_ticket_id is not None:
                raise InvalidTransitionError(
                    "counter already has an active ticket", entity="counter", entity_id=counter_id
                )

            for _attempt in range(self.config.max_dispatch_attempts):
                pool = self.candidates(counter)
                if not pool:
                    log.debug("%s: nothing waiting", counter.name)
                    return None
                head = pool[0]
                try:
                    ticket = self.tickets.call(
                        head.id,
                        counter.id,
                        expected_version=head.version,
                        served_by_user_id=counter.assigned_user_id,
                    )
                except ConflictError:
                    log.warning("%s lost the claim on %s, selecting again", counter.name, head.number)
                    continue

                try:
                    counter = self.counters.bind_ticket(counter.id, ticket.id)
                except DependencyUnavailableError:
                    self._undo(head)
                    raise

                log.info("%s called %s", counter.name, ticket.number)
                self.announce_ticket(EventKind.TICKET_CALLED, ticket, counter)
                self.announce_counter(counter)
                return CallResult(ticket=ticket, counter=counter)

        raise ConflictError("too many concurrent claims, try again", entity="counter", entity_id=counter_id)

    # -------------------- actions on the active ticket --------------------

    def begin_service(self, ticket_id: str) -> Ticket:
        ticket = self.tickets.begin_service(ticket_id)
        self.announce_ticket(EventKind.TICKET_UPDATED, ticket, self._counter_or_none(ticket.counter_id))
        return ticket

    def recall(self, ticket_id: str) -> Ticket:
        ticket = self.tickets.recall(ticket_id)
        log.info("recall #%d for %s", ticket.recall_count, ticket.number)
        self.announce_ticket(EventKind.TICKET_CALLED, ticket, self._counter_or_none(ticket.counter_id))
        return ticket

    def complete(self, ticket_id: str) -> Ticket:
        return self._release(ticket_id, lambda v: self.tickets.complete(ticket_id, expected_version=v), served=True)

    def transfer(self, ticket_id: str, new_service: ServiceType, *, target_counter_id: str | None = None) -> Ticket:
        if target_counter_id is not None:
            target = self.counters.get(target_counter_id)
            current = self.tickets.get(ticket_id)
            if not same_branch_scope(current.branch_id, target.branch_id):
                raise ValidationError("target counter is in another branch", entity="counter", entity_id=target.id)
            if not target.can_serve(new_service):
                raise ValidationError(
                    f"{target.name} does not serve {new_service.name}", entity="counter", entity_id=target.id
                )

        def apply(version: int | None) -> Ticket:
            return self.tickets.transfer(
                ticket_id, new_service, target_counter_id=target_counter_id, expected_version=version
            )

        return self._release(ticket_id, apply, served=False)

    def move_to_end(self, ticket_id: str, reason: str) -> Ticket:
        return self._release(
            ticket_id, lambda v: self.tickets.move_to_end(ticket_id, reason, expected_version=v), served=False
        )

    def mark_missed(self, ticket_id: str) -> Ticket:
        ticket = self.tickets.missed(ticket_id)
        log.info("%s marked missed", ticket.number)
        self.announce_ticket(EventKind.TICKET_UPDATED, ticket, None)
        return ticket

    def _release(self, ticket_id: str, apply: Callable[[int | None], Ticket], *, served: bool) -> Ticket:
        """Run a transition that frees the ticket's counter, under that counter's lock."""
        for _attempt in range(self.config.max_dispatch_attempts):
            before = self.tickets.get(ticket_id)
            if before.status not in ACTIVE_STATUSES:
                # Not bound to a counter; let the state machine report the bad edge.
                return apply(None)

            counter_id = before.counter_id
            with self.counters.hold(counter_id):
                try:
                    ticket = apply(before.version)
                except ConflictError:
                    continue

                counter = self.counters.get(counter_id)
                if counter.current_ticket_id == ticket_id:
                    try:
                        counter = self.counters.unbind_ticket(counter_id, served=served)
                    except DependencyUnavailableError:
                        self._undo(before)
                        raise

            log.info("%s -> %s (was at %s)", ticket.number, ticket.status.name, counter.name)
            announce_at = counter if ticket.status is not TicketStatus.WAITING else None
            self.announce_ticket(EventKind.TICKET_UPDATED, ticket, announce_at)
            self.announce_counter(counter)
            return ticket

        raise ConflictError("ticket keeps changing, re-fetch and retry", entity="ticket", entity_id=ticket_id)

    def _undo(self, previous: Ticket) -> None:
        try:
            self.tickets.restore(previous)
        except DependencyUnavailableError:
            log.error("could not roll back %s after a failed counter write", previous.number)
            raise

    # -------------------- suggestions --------------------

    def queue_position(self, ticket: Ticket, counter: Counter) -> int | None:
        for i, t in enumerate(self.candidates(counter), start=1):
            if t.id == ticket.id:
                return i
        return None

    def suggest_counter(self, ticket: Ticket) -> tuple[Counter | None, int | None]:
        """Least loaded online counter that can take the ticket, with the ticket's place there.

        Counters with at most two service tags get a small bonus: specialised
        counters drain their queue faster.
        """
        scored: list[tuple[float, str, Counter]] = []
        for c in self.counters.list():
            if c.status is not CounterStatus.ONLINE:
                continue
            if not same_branch_scope(ticket.branch_id, c.branch_id) or not c.can_serve(ticket.service_type):
                continue
            if ticket.counter_id not in (None, c.id):
                continue
            load = len(self.candidates(c)) - (0.5 if len(c.service_tags) <= 2 else 0.0)
            scored.append((load, c.name, c))
        if not scored:
            return None, None
        scored.sort(key=lambda s: (s[0], s[1]))
        best = scored[0][2]
        return best, self.queue_position(ticket, best)

    # -------------------- events --------------------

    def _counter_or_none(self, counter_id: str | None) -> Counter | None:
        return self.counters.get(counter_id) if counter_id is not None else None

    def announce_ticket(self, kind: EventKind, ticket: Ticket, counter: Counter | None) -> None:
        self.bus.publish(
            kind,
            branch_id=ticket.branch_id,
            entity_id=ticket.id,
            version=ticket.version,
            payload={
                "ticket": ticket_to_message(ticket),
                "number": ticket.number,
                "counter_name": counter.name if counter else None,
            },
        )

    def announce_counter(self, counter: Counter) -> None:
        self.bus.publish(
            EventKind.COUNTER_UPDATED,
            branch_id=counter.branch_id,
            entity_id=counter.id,
            version=counter.version,
            payload={"counter": counter_to_message(counter)},
        )

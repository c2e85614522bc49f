"""Counter store.

Counter writes are few and small, so a single store lock serialises them; that
is also what makes `rebind_staff` atomic across two counters. `hold()` gives
out a separate per-counter *operation* lock that the dispatch engine keeps for
the whole of a call-next / complete / transfer so a counter never ends up with
two active tickets.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace

from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .locks import KeyedLocks
from .models import Counter, CounterStatus, ServiceType
from .persistence import Persistence

log = logging.getLogger(__name__)


class CounterStore:
    def __init__(self, *, persistence: Persistence, initial: list[Counter] | None = None) -> None:
        self._persistence = persistence
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {c.id: c for c in initial or []}
        self._op_locks = KeyedLocks()

    @contextmanager
    def hold(self, counter_id: str) -> Iterator[None]:
        with self._op_locks.hold(counter_id):
            yield

    # -------------------- reads --------------------

    def get(self, counter_id: str) -> Counter:
        with self._lock:
            counter = self._counters.get(counter_id)
        if counter is None:
            raise NotFoundError("unknown counter", entity="counter", entity_id=counter_id)
        return counter

    def list(self, branch_id: str | None = None) -> list[Counter]:
        with self._lock:
            counters = list(self._counters.values())
        if branch_id is not None:
            counters = [c for c in counters if c.branch_id == branch_id]
        return sorted(counters, key=lambda c: (c.name, c.id))

    def find_by_user(self, user_id: str) -> Counter | None:
        with self._lock:
            for c in self._counters.values():
                if c.assigned_user_id == user_id:
                    return c
        return None

    # -------------------- writes --------------------

    def register(
        self,
        name: str,
        branch_id: str | None,
        service_tags: Iterable[ServiceType],
        *,
        status: CounterStatus = CounterStatus.OFFLINE,
        counter_id: str | None = None,
    ) -> Counter:
        name = (name or "").strip()
        if not name:
            raise ValidationError("counter name is required")
        tags = frozenset(service_tags)
        if not all(isinstance(t, ServiceType) for t in tags):
            raise ValidationError("unknown service tag")
        counter = Counter(
            id=counter_id or uuid.uuid4().hex,
            name=name,
            branch_id=branch_id,
            status=status,
            service_tags=tags,
        )
        with self._lock:
            if counter.id in self._counters:
                raise ValidationError("counter id already exists", entity="counter", entity_id=counter.id)
            self._persistence.save_counter(counter)
            self._counters[counter.id] = counter
        log.info("registered %s (%s) tags=%s", counter.name, counter.id, sorted(t.name for t in tags))
        return counter

    def set_status(self, counter_id: str, status: CounterStatus) -> Counter:
        if not isinstance(status, CounterStatus):
            raise ValidationError(f"unknown counter status: {status!r}")
        # An active ticket stays bound; staff must finish or hand it back first.
        return self._mutate(counter_id, lambda c: replace(c, status=status))

    def bind_ticket(self, counter_id: str, ticket_id: str) -> Counter:
        def apply(c: Counter) -> Counter:
            if c.current_ticket_id not in (None, ticket_id):
                raise InvalidTransitionError("counter already has an active ticket", entity="counter", entity_id=c.id)
            return replace(c, current_ticket_id=ticket_id)

        return self._mutate(counter_id, apply)

    def unbind_ticket(self, counter_id: str, *, served: bool = False) -> Counter:
        def apply(c: Counter) -> Counter:
            if served and c.current_ticket_id is not None:
                return replace(c, last_served_ticket_id=c.current_ticket_id, current_ticket_id=None)
            return replace(c, current_ticket_id=None)

        return self._mutate(counter_id, apply)

    def rebind_staff(self, counter_id: str, user_id: str | None) -> tuple[Counter, Counter, Counter | None, Counter | None]:
        """Bind `user_id` (or nobody) to a counter, releasing any other counter the user holds.

        Returns (target_before, target_after, other_before, other_after); the
        `other_*` pair is None when the user held no other counter. Both counters
        are persisted in one write, so no reader can see the user on two counters.
        """
        with self._lock:
            target = self._counters.get(counter_id)
            if target is None:
                raise NotFoundError("unknown counter", entity="counter", entity_id=counter_id)

            other = None
            if user_id is not None:
                other = next(
                    (c for c in self._counters.values() if c.assigned_user_id == user_id and c.id != counter_id),
                    None,
                )

            target_after = replace(target, assigned_user_id=user_id, version=target.version + 1)
            changed = [target_after]
            other_after = None
            if other is not None:
                other_after = replace(other, assigned_user_id=None, version=other.version + 1)
                changed.append(other_after)

            self._persistence.save_counters(changed)
            for c in changed:
                self._counters[c.id] = c
        return target, target_after, other, other_after

    def restore_staff(self, previous: list[Counter]) -> list[Counter]:
        """Put back the staff binding of earlier versions (undo after a failed audit write)."""
        with self._lock:
            restored = [
                replace(self._counters[p.id], assigned_user_id=p.assigned_user_id, version=self._counters[p.id].version + 1)
                for p in previous
            ]
            self._persistence.save_counters(restored)
            for c in restored:
                self._counters[c.id] = c
        return restored

    def _mutate(self, counter_id: str, apply: Callable[[Counter], Counter]) -> Counter:
        with self._lock:
            current = self._counters.get(counter_id)
            if current is None:
                raise NotFoundError("unknown counter", entity="counter", entity_id=counter_id)
            updated = replace(apply(current), version=current.version + 1)
            self._persistence.save_counter(updated)
            self._counters[counter_id] = updated
            return updated

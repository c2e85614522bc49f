"""Branch-scoped event broadcast.

Events are published after the state change they describe has been persisted.
Each event carries the entity's record version; the bus never delivers an
older version of an entity after a newer one (stale events are dropped), so
subscribers see every entity move forward. Unrelated entities may interleave
in any order. Subscribers should treat events as hints and re-fetch state
when they need certainty.

Delivery runs on a background worker by default so a slow subscriber never
holds up a teller. `synchronous=True` delivers inline (tests, simple scripts).
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

log = logging.getLogger(__name__)


class EventKind(enum.Enum):
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    TICKET_CALLED = "ticket_called"
    COUNTER_UPDATED = "counter_updated"

    @property
    def entity(self) -> str:
        return "counter" if self is EventKind.COUNTER_UPDATED else "ticket"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    branch_id: str | None
    entity_id: str
    version: int
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "branch_id": self.branch_id,
            "entity_id": self.entity_id,
            "version": self.version,
            "emitted_at": self.emitted_at.isoformat(),
            "data": self.payload,
        }


EventHandler = Callable[[Event], None]


class Subscription:
    def __init__(self, bus: EventBus, handler: EventHandler, branch_id: str | None) -> None:
        self._bus = bus
        self.handler = handler
        self.branch_id = branch_id

    def wants(self, event: Event) -> bool:
        # Branch-agnostic events go to every branch.
        return self.branch_id is None or event.branch_id is None or event.branch_id == self.branch_id

    def unsubscribe(self) -> None:
        self._bus._remove(self)


_STOP = object()


class EventBus:
    def __init__(self, *, synchronous: bool = False) -> None:
        self.synchronous = synchronous
        self._lock = threading.Lock()
        self._subs: list[Subscription] = []

        self._delivery_lock = threading.Lock()
        self._delivered: dict[tuple[str, str], int] = {}

        self._queue: queue.Queue[Any] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._closed = False

    def subscribe(self, handler: EventHandler, branch_id: str | None = None) -> Subscription:
        sub = Subscription(self, handler, branch_id)
        with self._lock:
            self._subs.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def publish(
        self,
        kind: EventKind,
        *,
        branch_id: str | None,
        entity_id: str,
        version: int,
        payload: dict[str, Any],
    ) -> Event:
        event = Event(kind=kind, branch_id=branch_id, entity_id=entity_id, version=version, payload=payload)
        if self.synchronous:
            self._deliver(event)
        else:
            self._ensure_worker()
            self._queue.put(event)
        return event

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event has been delivered. Returns False on timeout."""
        if self.synchronous or self._worker is None:
            return True
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 2.0) -> None:
        with self._lock:
            self._closed = True
            worker = self._worker
        if worker is not None and worker.is_alive():
            self._queue.put(_STOP)
            worker.join(timeout=timeout)

    # -------------------- delivery --------------------

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("event bus is closed")
            if self._worker is None:
                self._worker = threading.Thread(target=self._run, name="event-bus", daemon=True)
                self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: Event) -> None:
        key = (event.kind.entity, event.entity_id)
        with self._delivery_lock:
            last = self._delivered.get(key, 0)
            if event.version < last:
                log.debug("dropping stale %s for %s (v%d < v%d)", event.kind.value, event.entity_id, event.version, last)
                return
            self._delivered[key] = event.version

            with self._lock:
                subs = [s for s in self._subs if s.wants(event)]
            for sub in subs:
                try:
                    sub.handler(event)
                except Exception:
                    log.exception("event subscriber failed on %s", event.kind.value)

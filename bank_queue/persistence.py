"""Durable storage behind the stores.

The stores call the persistence layer *before* they swap a new record version
into memory: if the write raises, the in-memory state is left as it was and
the caller gets a `DependencyUnavailableError`.

Two implementations:
- `MemoryPersistence` keeps copies in process (default, and for tests).
- `JsonFilePersistence` keeps one JSON document per record kind in a
  directory and rewrites it atomically on every change.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .codec import (
    audit_from_message,
    audit_to_message,
    counter_from_message,
    counter_to_message,
    ticket_from_message,
    ticket_to_message,
)
from .errors import DependencyUnavailableError
from .models import Counter, CounterAssignmentAuditEntry, Ticket

log = logging.getLogger(__name__)

# (branch_id or "", prefix, ISO date)
SequenceScope = tuple[str, str, str]


@dataclass
class Snapshot:
    """Everything needed to rebuild the stores after a restart."""

    tickets: list[Ticket] = field(default_factory=list)
    counters: list[Counter] = field(default_factory=list)
    audit: list[CounterAssignmentAuditEntry] = field(default_factory=list)
    sequences: dict[SequenceScope, int] = field(default_factory=dict)


class Persistence:
    """Interface. Every method either completes or raises DependencyUnavailableError."""

    def save_ticket(self, ticket: Ticket) -> None:
        raise NotImplementedError

    def save_counter(self, counter: Counter) -> None:
        raise NotImplementedError

    def save_counters(self, counters: list[Counter]) -> None:
        """Write several counters as one unit."""
        raise NotImplementedError

    def append_audit(self, entries: list[CounterAssignmentAuditEntry]) -> None:
        raise NotImplementedError

    def save_sequence(self, scope: SequenceScope, value: int) -> None:
        raise NotImplementedError

    def load(self) -> Snapshot:
        raise NotImplementedError


class MemoryPersistence(Persistence):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tickets: dict[str, Ticket] = {}
        self._counters: dict[str, Counter] = {}
        self._audit: list[CounterAssignmentAuditEntry] = []
        self._sequences: dict[SequenceScope, int] = {}

    def save_ticket(self, ticket: Ticket) -> None:
        with self._lock:
            self._tickets[ticket.id] = ticket

    def save_counter(self, counter: Counter) -> None:
        with self._lock:
            self._counters[counter.id] = counter

    def save_counters(self, counters: list[Counter]) -> None:
        with self._lock:
            for c in counters:
                self._counters[c.id] = c

    def append_audit(self, entries: list[CounterAssignmentAuditEntry]) -> None:
        with self._lock:
            self._audit.extend(entries)

    def save_sequence(self, scope: SequenceScope, value: int) -> None:
        with self._lock:
            self._sequences[scope] = value

    def load(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                tickets=list(self._tickets.values()),
                counters=list(self._counters.values()),
                audit=list(self._audit),
                sequences=dict(self._sequences),
            )


class JsonFilePersistence(Persistence):
    """Directory of JSON documents: tickets.json, counters.json, audit.json, sequences.json."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()
        self._tickets: dict[str, dict[str, Any]] = {}
        self._counters: dict[str, dict[str, Any]] = {}
        self._audit: list[dict[str, Any]] = []
        self._sequences: dict[str, int] = {}
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DependencyUnavailableError(f"cannot create data directory {self.directory}: {e}") from e
        self._tickets = self._read("tickets.json", {})
        self._counters = self._read("counters.json", {})
        self._audit = self._read("audit.json", [])
        self._sequences = self._read("sequences.json", {})

    # -------------------- file helpers --------------------

    def _read(self, name: str, default: Any) -> Any:
        path = self.directory / name
        if not path.exists():
            return default
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise DependencyUnavailableError(f"cannot read {path}: {e}") from e
        if not isinstance(data, type(default)):
            raise DependencyUnavailableError(f"unexpected content in {path}")
        return data

    def _write(self, name: str, data: Any) -> None:
        path = self.directory / name
        tmp = path.with_suffix(".json.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            log.error("write to %s failed: %s", path, e)
            raise DependencyUnavailableError(f"cannot write {path}: {e}") from e

    # -------------------- Persistence --------------------

    def save_ticket(self, ticket: Ticket) -> None:
        with self._lock:
            updated = dict(self._tickets)
            updated[ticket.id] = ticket_to_message(ticket)
            self._write("tickets.json", updated)
            self._tickets = updated

    def save_counter(self, counter: Counter) -> None:
        self.save_counters([counter])

    def save_counters(self, counters: list[Counter]) -> None:
        with self._lock:
            updated = dict(self._counters)
            for c in counters:
                updated[c.id] = counter_to_message(c)
            self._write("counters.json", updated)
            self._counters = updated

    def append_audit(self, entries: list[CounterAssignmentAuditEntry]) -> None:
        with self._lock:
            updated = self._audit + [audit_to_message(e) for e in entries]
            self._write("audit.json", updated)
            self._audit = updated

    def save_sequence(self, scope: SequenceScope, value: int) -> None:
        with self._lock:
            updated = dict(self._sequences)
            updated["|".join(scope)] = value
            self._write("sequences.json", updated)
            self._sequences = updated

    def load(self) -> Snapshot:
        with self._lock:
            sequences: dict[SequenceScope, int] = {}
            for key, value in self._sequences.items():
                branch_id, prefix, day = key.split("|", 2)
                sequences[(branch_id, prefix, day)] = int(value)
            return Snapshot(
                tickets=[ticket_from_message(m) for m in self._tickets.values()],
                counters=[counter_from_message(m) for m in self._counters.values()],
                audit=[audit_from_message(m) for m in self._audit],
                sequences=sequences,
            )

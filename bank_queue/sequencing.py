from __future__ import annotations

# Ticket numbering.
#
# Numbers look like A001: the service prefix plus a zero padded counter. The
# counter is scoped to (branch, prefix, branch-local calendar day) and starts
# again at 1 after the branch's local midnight. Two services that share a
# prefix share the counter.
#
# Allocation is serialised per scope, and the new high-water mark is persisted
# before the number is handed out, so a crash or restart can leave a gap but
# never issue the same number twice.

import logging
import threading
from datetime import datetime

from .locks import KeyedLocks
from .models import ServiceType
from .persistence import Persistence, SequenceScope
from .registry import BranchRegistry, ServiceCatalog

log = logging.getLogger(__name__)


class TicketNumberer:
    def __init__(
        self,
        *,
        branches: BranchRegistry,
        catalog: ServiceCatalog,
        persistence: Persistence,
        width: int = 3,
        initial: dict[SequenceScope, int] | None = None,
    ) -> None:
        self._branches = branches
        self._catalog = catalog
        self._persistence = persistence
        self._width = width
        self._scope_locks = KeyedLocks()
        self._lock = threading.Lock()
        self._last: dict[SequenceScope, int] = dict(initial or {})

    def scope_for(self, service_type: ServiceType, branch_id: str | None, now: datetime) -> SequenceScope:
        local_day = now.astimezone(self._branches.timezone(branch_id)).date()
        return (branch_id or "", self._catalog.prefix(service_type), local_day.isoformat())

    def next_number(self, service_type: ServiceType, branch_id: str | None, now: datetime) -> str:
        scope = self.scope_for(service_type, branch_id, now)
        with self._scope_locks.hold(scope):
            with self._lock:
                value = self._last.get(scope, 0) + 1
            # Raises DependencyUnavailableError; the counter is not advanced then.
            self._persistence.save_sequence(scope, value)
            with self._lock:
                self._last[scope] = value
        number = f"{scope[1]}{value:0{self._width}d}"
        log.debug("allocated %s in scope %s", number, scope)
        return number

    def current(self, service_type: ServiceType, branch_id: str | None, now: datetime) -> int:
        """Last value handed out in the scope `now` falls in (0 if none)."""
        scope = self.scope_for(service_type, branch_id, now)
        with self._lock:
            return self._last.get(scope, 0)

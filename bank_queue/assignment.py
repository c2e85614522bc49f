"""Counter staffing and its audit trail.

A staff member works one counter at a time. Moving a user to a new counter
releases the old one in the same step and writes one audit entry per counter
touched. Audit entries are frozen and only ever appended.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from .codec import counter_to_message
from .counters import CounterStore
from .errors import DependencyUnavailableError, NotFoundError
from .events import EventBus, EventKind
from .models import Actor, AssignmentAction, Counter, CounterAssignmentAuditEntry, StaffMember
from .persistence import Persistence
from .registry import StaffDirectory

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentResult:
    counter: Counter
    entries: tuple[CounterAssignmentAuditEntry, ...]
    released_counter: Counter | None = None

    @property
    def changed(self) -> bool:
        return bool(self.entries)


class AssignmentService:
    def __init__(
        self,
        *,
        counters: CounterStore,
        staff: StaffDirectory,
        persistence: Persistence,
        bus: EventBus,
        clock: Callable[[], datetime],
        initial: list[CounterAssignmentAuditEntry] | None = None,
    ) -> None:
        self._counters = counters
        self._staff = staff
        self._persistence = persistence
        self._bus = bus
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: list[CounterAssignmentAuditEntry] = list(initial or [])

    def assign_staff(
        self,
        counter_id: str,
        user_id: str | None,
        performed_by: Actor,
        *,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> AssignmentResult:
        """Bind `user_id` to a counter, or unbind whoever is there when `user_id` is None.

        Unassigning is always allowed, even while the counter has a ticket in
        service.
        """
        target = self._counters.get(counter_id)
        member = self._staff.get(user_id) if user_id is not None else None

        with self._lock:
            target = self._counters.get(counter_id)
            if target.assigned_user_id == user_id:
                return AssignmentResult(counter=target, entries=())

            # The counter writes and both audit rows happen under the same lock.
            before, after, other_before, other_after = self._counters.rebind_staff(counter_id, user_id)
            now = self._clock()

            entries = []
            if other_before is not None:
                entries.append(
                    self._entry(other_before, AssignmentAction.UNASSIGNED, None, performed_by, now, reason, ip_address)
                )
            if user_id is None:
                action = AssignmentAction.UNASSIGNED
            elif before.assigned_user_id is None:
                action = AssignmentAction.ASSIGNED
            else:
                action = AssignmentAction.REASSIGNED
            entries.append(self._entry(before, action, member, performed_by, now, reason, ip_address))

            try:
                self._persistence.append_audit(entries)
            except DependencyUnavailableError:
                self._counters.restore_staff([c for c in (before, other_before) if c is not None])
                raise
            self._entries.extend(entries)

        for e in entries:
            log.info(
                "%s %s: %s -> %s (by %s)",
                e.action.value, e.counter_name, e.previous_user_name or "-", e.user_name or "-",
                performed_by.full_name,
            )
        if other_after is not None:
            self._emit(other_after)
        self._emit(after)
        return AssignmentResult(counter=after, entries=tuple(entries), released_counter=other_after)

    def list_audit(
        self,
        *,
        branch_id: str | None = None,
        counter_id: str | None = None,
        user_id: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[CounterAssignmentAuditEntry]:
        """Newest first. `user_id` matches both the new and the previous assignee."""
        with self._lock:
            entries = list(self._entries)
        out = []
        for e in entries:
            if branch_id is not None and e.branch_id != branch_id:
                continue
            if counter_id is not None and e.counter_id != counter_id:
                continue
            if user_id is not None and user_id not in (e.user_id, e.previous_user_id):
                continue
            if from_time is not None and e.timestamp < from_time:
                continue
            if to_time is not None and e.timestamp > to_time:
                continue
            out.append(e)
        # Equal timestamps: later appends first.
        out.reverse()
        out.sort(key=lambda e: e.timestamp, reverse=True)
        return out

    def _entry(
        self,
        counter_before: Counter,
        action: AssignmentAction,
        member: StaffMember | None,
        performed_by: Actor,
        now: datetime,
        reason: str | None,
        ip_address: str | None,
    ) -> CounterAssignmentAuditEntry:
        previous = self._lookup(counter_before.assigned_user_id)
        return CounterAssignmentAuditEntry(
            id=uuid.uuid4().hex,
            counter_id=counter_before.id,
            counter_name=counter_before.name,
            action=action,
            timestamp=now,
            branch_id=counter_before.branch_id,
            user_id=member.id if member else None,
            user_name=member.full_name if member else None,
            user_email=member.email if member else None,
            previous_user_id=counter_before.assigned_user_id,
            previous_user_name=previous.full_name if previous else None,
            performed_by_user_id=performed_by.user_id,
            performed_by_user_name=performed_by.full_name,
            reason=reason,
            ip_address=ip_address,
        )

    def _lookup(self, user_id: str | None) -> StaffMember | None:
        if user_id is None:
            return None
        try:
            return self._staff.get(user_id)
        except NotFoundError:
            # The previous assignee may have left the directory since.
            return None

    def _emit(self, counter: Counter) -> None:
        self._bus.publish(
            EventKind.COUNTER_UPDATED,
            branch_id=counter.branch_id,
            entity_id=counter.id,
            version=counter.version,
            payload={"counter": counter_to_message(counter)},
        )

from __future__ import annotations

# The queue engine is the *authoritative brain* of the branch.
#
# IMPORTANT: This file contains two layers:
# 1) `QueueManager` (pure logic over the stores, easy to unit test)
# 2) `MqttQueueManagerService` + `main()` (integration with the MQTT broker)

import argparse
import logging
import time
import threading
from collections import Counter as Tally
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TYPE_CHECKING

from .assignment import AssignmentResult, AssignmentService
from .codec import (
    audit_to_message,
    counter_to_message,
    customer_from_message,
    parse_counter_status,
    parse_service_type,
    parse_ticket_status,
    parse_time,
    ticket_to_message,
)
from .config import QueueConfig, add_logging_args, add_mqtt_args
from .counters import CounterStore
from .dispatch import CallResult, DispatchEngine
from .errors import ErrorResponse, NotFoundError, QueueError, ValidationError
from .events import Event, EventBus, EventHandler, EventKind, Subscription
from .models import (
    Actor,
    Counter,
    CounterAssignmentAuditEntry,
    CounterStatus,
    Customer,
    CustomerSegment,
    ServiceType,
    StaffRole,
    Ticket,
    TicketStatus,
)
from .persistence import MemoryPersistence, Persistence
from .registry import BranchRegistry, ReferenceData, ServiceCatalog, StaffDirectory, default_reference_data
from .sequencing import TicketNumberer
from .tickets import TicketStore

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedTicket:
    """What the kiosk prints: the ticket plus where and how long to wait."""

    ticket: Ticket
    suggested_counter: Counter | None
    queue_position: int | None
    estimated_wait_minutes: int | None

    def to_message(self) -> dict[str, Any]:
        c = self.suggested_counter
        return {
            "type": "ticket_issued",
            "ticket": ticket_to_message(self.ticket),
            "suggested_counter_id": c.id if c else None,
            "suggested_counter": c.name if c else None,
            "queue_position": self.queue_position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
        }


@dataclass(frozen=True)
class QueueStats:
    branch_id: str | None
    waiting_by_service: dict[ServiceType, int]
    called: int
    serving: int
    completed_today: int
    missed_today: int
    average_wait_seconds: float | None

    @property
    def waiting(self) -> int:
        return sum(self.waiting_by_service.values())

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "queue_stats",
            "branch_id": self.branch_id,
            "waiting": self.waiting,
            "waiting_by_service": {st.name: n for st, n in self.waiting_by_service.items()},
            "called": self.called,
            "serving": self.serving,
            "completed_today": self.completed_today,
            "missed_today": self.missed_today,
            "average_wait_seconds": self.average_wait_seconds,
        }


class QueueManager:
    """Core business logic (testable without MQTT).

    Wires the stores together and is the only entry point callers use. Events
    are published by the layer that made the change, always after the change
    was persisted.
    """

    def __init__(
        self,
        *,
        config: QueueConfig | None = None,
        reference: ReferenceData | None = None,
        persistence: Persistence | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or QueueConfig()
        reference = reference if reference is not None else default_reference_data()
        self.persistence = persistence if persistence is not None else MemoryPersistence()
        self.bus = bus if bus is not None else EventBus()
        self._clock = clock or _utcnow

        snapshot = self.persistence.load()

        self.branches = BranchRegistry(reference.branches)
        self.staff = StaffDirectory(reference.staff)
        self.numberer = TicketNumberer(
            branches=self.branches,
            catalog=ServiceCatalog(reference.prefixes),
            persistence=self.persistence,
            width=self.config.sequence_width,
            initial=snapshot.sequences,
        )
        self.tickets = TicketStore(
            config=self.config,
            numberer=self.numberer,
            branches=self.branches,
            persistence=self.persistence,
            clock=self._clock,
            initial=snapshot.tickets,
        )
        self.counters = CounterStore(persistence=self.persistence, initial=snapshot.counters)
        self.dispatch = DispatchEngine(tickets=self.tickets, counters=self.counters, bus=self.bus, config=self.config)
        self.assignment = AssignmentService(
            counters=self.counters,
            staff=self.staff,
            persistence=self.persistence,
            bus=self.bus,
            clock=self._clock,
            initial=snapshot.audit,
        )

        # Seed counters only fill gaps; a restart keeps whatever was persisted.
        for seed in reference.counters:
            try:
                self.counters.get(seed.id)
            except NotFoundError:
                self.counters.register(
                    seed.name, seed.branch_id, seed.service_tags, status=seed.status, counter_id=seed.id
                )

    # -------------------- ticket lifecycle --------------------

    def issue_ticket(
        self,
        service_type: ServiceType,
        branch_id: str | None = None,
        customer: Customer | None = None,
        *,
        is_booking: bool = False,
    ) -> IssuedTicket:
        ticket = self.tickets.create(service_type, branch_id, customer, is_booking=is_booking)
        self.dispatch.announce_ticket(EventKind.TICKET_CREATED, ticket, None)

        counter, position = self.dispatch.suggest_counter(ticket)
        wait = position * self.config.minutes_per_ticket if position is not None else None
        return IssuedTicket(ticket=ticket, suggested_counter=counter, queue_position=position, estimated_wait_minutes=wait)

    def check_in_booking(self, booking_code: str, branch_id: str | None = None) -> IssuedTicket:
        """Turn an appointment code into a ticket.

        VIP codes get a VIP ticket for a Diamond customer; everything else is a
        consultation.
        """
        code = (booking_code or "").strip()
        if not code:
            raise ValidationError("booking code is required")
        if "VIP" in code.upper():
            service_type, segment = ServiceType.VIP, CustomerSegment.DIAMOND
        else:
            service_type, segment = ServiceType.CONSULTATION, CustomerSegment.REGULAR
        customer = Customer(id=f"BOOK_{code}", segment=segment)
        return self.issue_ticket(service_type, branch_id, customer, is_booking=True)

    def call_next(self, counter_id: str) -> CallResult | None:
        return self.dispatch.call_next(counter_id)

    def begin_service(self, ticket_id: str) -> Ticket:
        return self.dispatch.begin_service(ticket_id)

    def recall(self, ticket_id: str) -> Ticket:
        return self.dispatch.recall(ticket_id)

    def complete(self, ticket_id: str) -> Ticket:
        return self.dispatch.complete(ticket_id)

    def transfer(self, ticket_id: str, new_service: ServiceType, *, target_counter_id: str | None = None) -> Ticket:
        return self.dispatch.transfer(ticket_id, new_service, target_counter_id=target_counter_id)

    def move_to_end(self, ticket_id: str, reason: str) -> Ticket:
        return self.dispatch.move_to_end(ticket_id, reason)

    def mark_missed(self, ticket_id: str) -> Ticket:
        return self.dispatch.mark_missed(ticket_id)

    # -------------------- ticket annotations --------------------

    def append_remark(self, ticket_id: str, text: str) -> Ticket:
        return self._updated(self.tickets.append_remark(ticket_id, text))

    def update_customer_info(
        self,
        ticket_id: str,
        *,
        phone: str | None = None,
        email: str | None = None,
        note: str | None = None,
    ) -> Ticket:
        return self._updated(self.tickets.update_customer_info(ticket_id, phone=phone, email=email, note=note))

    def submit_feedback(
        self,
        ticket_id: str,
        rating: int,
        *,
        comment: str | None = None,
        tags: tuple[str, ...] = (),
    ) -> Ticket:
        return self._updated(self.tickets.submit_feedback(ticket_id, rating, comment=comment, tags=tags))

    def _updated(self, ticket: Ticket) -> Ticket:
        self.dispatch.announce_ticket(EventKind.TICKET_UPDATED, ticket, None)
        return ticket

    # -------------------- ticket queries --------------------

    def get_ticket(self, ticket_id: str) -> Ticket:
        return self.tickets.get(ticket_id)

    def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        service_type: ServiceType | None = None,
        branch_id: str | None = None,
        staff_id: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[Ticket]:
        return self.tickets.list(
            status=status,
            service_type=service_type,
            branch_id=branch_id,
            staff_id=staff_id,
            from_time=from_time,
            to_time=to_time,
        )

    def waiting_queue(self, counter_id: str) -> list[Ticket]:
        """The tickets this counter would call, in the order it would call them."""
        return self.dispatch.candidates(self.counters.get(counter_id))

    def feedback_ticket(self, counter_id: str) -> Ticket | None:
        """Ticket the counter's feedback screen should rate: the last one it completed."""
        counter = self.counters.get(counter_id)
        if counter.last_served_ticket_id is None:
            return None
        ticket = self.tickets.get(counter.last_served_ticket_id)
        return ticket if ticket.feedback is None else None

    def queue_stats(self, branch_id: str | None = None) -> QueueStats:
        tz = self.branches.timezone(branch_id)
        today = self._clock().astimezone(tz).date()

        def on_today(ts: datetime | None) -> bool:
            return ts is not None and ts.astimezone(tz).date() == today

        waiting: Tally[ServiceType] = Tally()
        by_status: Tally[TicketStatus] = Tally()
        completed = missed = 0
        waits: list[float] = []
        for t in self.tickets.list(branch_id=branch_id):
            by_status[t.status] += 1
            if t.status is TicketStatus.WAITING:
                waiting[t.service_type] += 1
            elif t.status is TicketStatus.COMPLETED and on_today(t.completed_time):
                completed += 1
            elif t.status is TicketStatus.MISSED and on_today(t.created_time):
                missed += 1
            if on_today(t.called_time):
                waits.append((t.called_time - t.created_time).total_seconds())

        return QueueStats(
            branch_id=branch_id,
            waiting_by_service={st: waiting[st] for st in ServiceType},
            called=by_status[TicketStatus.CALLED],
            serving=by_status[TicketStatus.SERVING],
            completed_today=completed,
            missed_today=missed,
            average_wait_seconds=round(sum(waits) / len(waits), 1) if waits else None,
        )

    # -------------------- counters & staffing --------------------

    def register_counter(
        self,
        name: str,
        branch_id: str | None,
        service_tags: set[ServiceType] | frozenset[ServiceType],
        *,
        status: CounterStatus = CounterStatus.OFFLINE,
        counter_id: str | None = None,
    ) -> Counter:
        self.branches.require_active(branch_id)
        counter = self.counters.register(name, branch_id, service_tags, status=status, counter_id=counter_id)
        self.dispatch.announce_counter(counter)
        return counter

    def set_counter_status(self, counter_id: str, status: CounterStatus) -> Counter:
        counter = self.counters.set_status(counter_id, status)
        log.info("%s is now %s", counter.name, counter.status.name)
        self.dispatch.announce_counter(counter)
        return counter

    def assign_staff(
        self,
        counter_id: str,
        user_id: str | None,
        performed_by: Actor,
        *,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> AssignmentResult:
        return self.assignment.assign_staff(counter_id, user_id, performed_by, reason=reason, ip_address=ip_address)

    def list_counters(self, branch_id: str | None = None) -> list[Counter]:
        return self.counters.list(branch_id)

    def list_audit(
        self,
        *,
        branch_id: str | None = None,
        counter_id: str | None = None,
        user_id: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[CounterAssignmentAuditEntry]:
        return self.assignment.list_audit(
            branch_id=branch_id, counter_id=counter_id, user_id=user_id, from_time=from_time, to_time=to_time
        )

    # -------------------- events --------------------

    def subscribe(self, handler: EventHandler, branch_id: str | None = None) -> Subscription:
        return self.bus.subscribe(handler, branch_id)

    def close(self) -> None:
        self.bus.close()


# -------------------- request field helpers --------------------


def _required_str(msg: dict[str, Any], key: str) -> str:
    value = msg.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} required")
    return value.strip()


def _optional_str(msg: dict[str, Any], key: str) -> str | None:
    value = msg.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _optional(msg: dict[str, Any], key: str, parse: Callable[[Any], Any]) -> Any:
    value = msg.get(key)
    return None if value is None else parse(value)


def _actor(msg: dict[str, Any]) -> Actor:
    raw = msg.get("performed_by")
    if not isinstance(raw, dict):
        raise ValidationError("performed_by required")
    role = str(raw.get("role", StaffRole.ADMIN.value)).upper()
    if role not in StaffRole.__members__:
        raise ValidationError(f"unknown role: {role!r}")
    return Actor(
        user_id=_required_str(raw, "user_id"),
        full_name=_required_str(raw, "full_name"),
        role=StaffRole[role],
        branch_id=_optional_str(raw, "branch_id"),
    )


def _ticket_reply(ticket: Ticket) -> dict[str, Any]:
    return {"type": "ticket", "ticket": ticket_to_message(ticket)}


class MqttQueueManagerService:
    """MQTT adapter around the QueueManager business logic."""

    def __init__(self, *, mqtt: MqttClient, namespace: str, manager: QueueManager) -> None:
        # Local imports so unit tests can import QueueManager without paho-mqtt.
        from .mqtt_topics import branch_events, branch_status, engine_requests

        self._branch_events = branch_events
        self._branch_status = branch_status
        self._requests_topic = engine_requests(namespace)

        self.mqtt = mqtt
        self.namespace = namespace
        self.manager = manager

        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "issue_ticket": self._issue_ticket,
            "check_in_booking": self._check_in_booking,
            "call_next": self._call_next,
            "begin_service": lambda m: _ticket_reply(self.manager.begin_service(_required_str(m, "ticket_id"))),
            "recall": lambda m: _ticket_reply(self.manager.recall(_required_str(m, "ticket_id"))),
            "complete": lambda m: _ticket_reply(self.manager.complete(_required_str(m, "ticket_id"))),
            "transfer": self._transfer,
            "move_to_end": lambda m: _ticket_reply(
                self.manager.move_to_end(_required_str(m, "ticket_id"), _required_str(m, "reason"))
            ),
            "mark_missed": lambda m: _ticket_reply(self.manager.mark_missed(_required_str(m, "ticket_id"))),
            "append_remark": lambda m: _ticket_reply(
                self.manager.append_remark(_required_str(m, "ticket_id"), _required_str(m, "text"))
            ),
            "update_customer_info": self._update_customer_info,
            "submit_feedback": self._submit_feedback,
            "set_counter_status": self._set_counter_status,
            "assign_staff": self._assign_staff,
            "list_counters": lambda m: {
                "type": "counters",
                "counters": [counter_to_message(c) for c in self.manager.list_counters(_optional_str(m, "branch_id"))],
            },
            "list_tickets": self._list_tickets,
            "list_audit": self._list_audit,
            "queue_stats": lambda m: self.manager.queue_stats(_optional_str(m, "branch_id")).to_message(),
        }

        self._subscription: Subscription | None = None

        # Background publisher thread control.
        self._stop_event = threading.Event()
        self._status_thread: threading.Thread | None = None

    def start(self, *, publish_status_every: float | None = None) -> None:
        self.mqtt.subscribe(self._requests_topic)
        self.mqtt.add_handler(self._handle_message)

        # Bridge the in-process bus onto the per-branch event topics.
        self._subscription = self.manager.subscribe(self._forward_event)

        interval = publish_status_every if publish_status_every is not None else self.manager.config.status_interval
        self._status_thread = threading.Thread(
            target=self._status_publisher_loop,
            args=(interval,),
            daemon=True,
        )
        self._status_thread.start()

    def stop(self) -> None:
        """Stop background threads. Call before disconnecting MQTT."""
        self._stop_event.set()
        if self._subscription is not None:
            self._subscription.unsubscribe()
        t = self._status_thread
        if t and t.is_alive():
            t.join(timeout=1.0)

    def _forward_event(self, event: Event) -> None:
        self.mqtt.publish(self._branch_events(event.branch_id, self.namespace), event.to_message())

    def publish_status(self) -> None:
        """Publish one queue snapshot per branch."""
        for branch in self.manager.branches.all():
            stats = self.manager.queue_stats(branch.id)
            self.mqtt.publish(self._branch_status(branch.id, self.namespace), stats.to_message())

    def _status_publisher_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.publish_status()
            except QueueError as e:
                # The broker may be briefly unreachable; try again next tick.
                log.warning("status publish failed: %s", e)
            self._stop_event.wait(interval)

    def _reply(self, reply_to: str, corr_id: str | None, message: dict[str, Any]) -> None:
        msg = dict(message)
        if corr_id is not None:
            msg["corr_id"] = corr_id
        self.mqtt.publish(reply_to, msg)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if topic != self._requests_topic:
            return

        mtype = msg.get("type")
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None
        if not reply_to:
            log.debug("ignoring %s without reply_to", mtype)
            return

        handler = self._handlers.get(mtype) if isinstance(mtype, str) else None
        if handler is None:
            self._reply(reply_to, corr_id, ErrorResponse("bad_request", f"unknown request type {mtype!r}").to_message())
            return

        try:
            reply = handler(msg)
        except QueueError as e:
            log.info("%s rejected: %s", mtype, e)
            reply = ErrorResponse.from_exception(e).to_message()
        except Exception:
            log.exception("%s failed", mtype)
            reply = ErrorResponse("internal_error", f"{mtype} failed").to_message()
        self._reply(reply_to, corr_id, reply)

    # -------------------- request handlers --------------------

    def _issue_ticket(self, msg: dict[str, Any]) -> dict[str, Any]:
        customer = msg.get("customer")
        if customer is not None and not isinstance(customer, dict):
            raise ValidationError("customer must be an object")
        issued = self.manager.issue_ticket(
            parse_service_type(msg.get("service_type")),
            _optional_str(msg, "branch_id"),
            customer_from_message(customer),
        )
        return issued.to_message()

    def _check_in_booking(self, msg: dict[str, Any]) -> dict[str, Any]:
        issued = self.manager.check_in_booking(_required_str(msg, "booking_code"), _optional_str(msg, "branch_id"))
        return issued.to_message()

    def _call_next(self, msg: dict[str, Any]) -> dict[str, Any]:
        counter_id = _required_str(msg, "counter_id")
        result = self.manager.call_next(counter_id)
        counter = result.counter if result else self.manager.counters.get(counter_id)
        return {
            "type": "next_ticket",
            "ticket": ticket_to_message(result.ticket) if result else None,
            "counter": counter_to_message(counter),
        }

    def _transfer(self, msg: dict[str, Any]) -> dict[str, Any]:
        ticket = self.manager.transfer(
            _required_str(msg, "ticket_id"),
            parse_service_type(msg.get("service_type")),
            target_counter_id=_optional_str(msg, "target_counter_id"),
        )
        return _ticket_reply(ticket)

    def _update_customer_info(self, msg: dict[str, Any]) -> dict[str, Any]:
        ticket = self.manager.update_customer_info(
            _required_str(msg, "ticket_id"),
            phone=_optional_str(msg, "phone"),
            email=_optional_str(msg, "email"),
            note=_optional_str(msg, "note"),
        )
        return _ticket_reply(ticket)

    def _submit_feedback(self, msg: dict[str, Any]) -> dict[str, Any]:
        tags = msg.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ValidationError("tags must be a list of strings")
        ticket = self.manager.submit_feedback(
            _required_str(msg, "ticket_id"),
            msg.get("rating"),
            comment=_optional_str(msg, "comment"),
            tags=tuple(tags),
        )
        return _ticket_reply(ticket)

    def _set_counter_status(self, msg: dict[str, Any]) -> dict[str, Any]:
        counter = self.manager.set_counter_status(
            _required_str(msg, "counter_id"), parse_counter_status(msg.get("status"))
        )
        return {"type": "counter", "counter": counter_to_message(counter)}

    def _assign_staff(self, msg: dict[str, Any]) -> dict[str, Any]:
        result = self.manager.assign_staff(
            _required_str(msg, "counter_id"),
            _optional_str(msg, "user_id"),
            _actor(msg),
            reason=_optional_str(msg, "reason"),
            ip_address=_optional_str(msg, "ip_address"),
        )
        released = result.released_counter
        return {
            "type": "assignment",
            "counter": counter_to_message(result.counter),
            "released_counter": counter_to_message(released) if released else None,
            "entries": [audit_to_message(e) for e in result.entries],
        }

    def _list_tickets(self, msg: dict[str, Any]) -> dict[str, Any]:
        tickets = self.manager.list_tickets(
            status=_optional(msg, "status", parse_ticket_status),
            service_type=_optional(msg, "service_type", parse_service_type),
            branch_id=_optional_str(msg, "branch_id"),
            staff_id=_optional_str(msg, "staff_id"),
            from_time=parse_time(msg.get("from_time"), "from_time"),
            to_time=parse_time(msg.get("to_time"), "to_time"),
        )
        return {"type": "tickets", "tickets": [ticket_to_message(t) for t in tickets]}

    def _list_audit(self, msg: dict[str, Any]) -> dict[str, Any]:
        entries = self.manager.list_audit(
            branch_id=_optional_str(msg, "branch_id"),
            counter_id=_optional_str(msg, "counter_id"),
            user_id=_optional_str(msg, "user_id"),
            from_time=parse_time(msg.get("from_time"), "from_time"),
            to_time=parse_time(msg.get("to_time"), "to_time"),
        )
        return {"type": "audit", "entries": [audit_to_message(e) for e in entries]}


def main() -> None:
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient
    from .persistence import JsonFilePersistence
    from .registry import load_reference_data

    parser = argparse.ArgumentParser(description="Bank queue engine (MQTT)")
    add_mqtt_args(parser)
    add_logging_args(parser)
    parser.add_argument("--seed-file", default=None, help="JSON file with branches, staff and counters")
    parser.add_argument("--data-dir", default=None, help="persist state as JSON files in this directory")
    parser.add_argument(
        "--publish-status-every",
        type=float,
        default=QueueConfig().status_interval,
        help="seconds between broadcast queue snapshots",
    )
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    reference = load_reference_data(args.seed_file) if args.seed_file else default_reference_data()
    persistence = JsonFilePersistence(args.data_dir) if args.data_dir else MemoryPersistence()
    manager = QueueManager(reference=reference, persistence=persistence)

    mqtt_client = MqttClient(client_id="engine", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    service = MqttQueueManagerService(mqtt=mqtt_client, namespace=args.namespace, manager=manager)
    service.start(publish_status_every=args.publish_status_every)

    print(f"[manager] connected to MQTT {args.mqtt_host}:{args.mqtt_port}, namespace={args.namespace}")
    print(f"[manager] branches: {', '.join(b.id for b in manager.branches.all())}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()
        manager.close()
        mqtt_client.stop()


if __name__ == "__main__":
    main()

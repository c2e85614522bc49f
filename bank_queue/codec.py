"""Serialization boundary.

Enumerations travel as stable integer codes (the values of the enums in
`models`), timestamps as ISO-8601 strings. Parsers accept either the code or
the enum name and raise `ValidationError` on anything else, so an unknown
value never reaches the engine.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, TypeVar

from .errors import ValidationError
from .models import (
    AssignmentAction,
    Counter,
    CounterAssignmentAuditEntry,
    CounterStatus,
    Customer,
    CustomerSegment,
    Feedback,
    Remark,
    ServiceType,
    Ticket,
    TicketStatus,
)

E = TypeVar("E", bound=enum.Enum)


def _parse_enum(enum_type: type[E], value: Any, field_name: str) -> E:
    if isinstance(value, enum_type):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return enum_type(value)
        except ValueError:
            pass
    elif isinstance(value, str):
        key = value.strip().upper()
        if key in enum_type.__members__:
            return enum_type[key]
        if key.isdigit():
            return _parse_enum(enum_type, int(key), field_name)
    raise ValidationError(f"unknown {field_name}: {value!r}")


def parse_service_type(value: Any) -> ServiceType:
    return _parse_enum(ServiceType, value, "service_type")


def parse_ticket_status(value: Any) -> TicketStatus:
    return _parse_enum(TicketStatus, value, "status")


def parse_segment(value: Any) -> CustomerSegment:
    return _parse_enum(CustomerSegment, value, "customer_segment")


def parse_counter_status(value: Any) -> CounterStatus:
    return _parse_enum(CounterStatus, value, "counter_status")


def parse_time(value: Any, field_name: str = "time") -> datetime | None:
    """ISO-8601 to an aware datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as e:
            raise ValidationError(f"invalid {field_name}: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def customer_to_message(customer: Customer | None) -> dict[str, Any] | None:
    if customer is None:
        return None
    return {
        "id": customer.id,
        "name": customer.name,
        "segment": customer.segment.value,
        "phone": customer.phone,
        "email": customer.email,
        "note": customer.note,
    }


def customer_from_message(msg: dict[str, Any] | None) -> Customer | None:
    if not msg:
        return None
    return Customer(
        id=msg.get("id"),
        name=msg.get("name"),
        segment=parse_segment(msg.get("segment", CustomerSegment.REGULAR.value)),
        phone=msg.get("phone"),
        email=msg.get("email"),
        note=msg.get("note"),
    )


def ticket_to_message(ticket: Ticket) -> dict[str, Any]:
    fb = ticket.feedback
    return {
        "id": ticket.id,
        "number": ticket.number,
        "service_type": ticket.service_type.value,
        "status": ticket.status.value,
        "branch_id": ticket.branch_id,
        "counter_id": ticket.counter_id,
        "created_time": _iso(ticket.created_time),
        "called_time": _iso(ticket.called_time),
        "completed_time": _iso(ticket.completed_time),
        "requeued_time": _iso(ticket.requeued_time),
        "priority_score": ticket.priority_score,
        "sequence": ticket.sequence,
        "recall_count": ticket.recall_count,
        "moved_to_end_count": ticket.moved_to_end_count,
        "customer": customer_to_message(ticket.customer),
        "remarks": [{"text": r.text, "created_time": _iso(r.created_time)} for r in ticket.remarks],
        "served_by_user_id": ticket.served_by_user_id,
        "is_booking": ticket.is_booking,
        "feedback": None
        if fb is None
        else {
            "rating": fb.rating,
            "comment": fb.comment,
            "tags": list(fb.tags),
            "submitted_time": _iso(fb.submitted_time),
        },
        "version": ticket.version,
    }


def counter_to_message(counter: Counter) -> dict[str, Any]:
    return {
        "id": counter.id,
        "name": counter.name,
        "branch_id": counter.branch_id,
        "status": counter.status.value,
        "service_tags": sorted(t.value for t in counter.service_tags),
        "current_ticket_id": counter.current_ticket_id,
        "last_served_ticket_id": counter.last_served_ticket_id,
        "assigned_user_id": counter.assigned_user_id,
        "version": counter.version,
    }


def audit_to_message(entry: CounterAssignmentAuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "counter_id": entry.counter_id,
        "counter_name": entry.counter_name,
        "user_id": entry.user_id,
        "user_name": entry.user_name,
        "user_email": entry.user_email,
        "previous_user_id": entry.previous_user_id,
        "previous_user_name": entry.previous_user_name,
        "action": entry.action.value,
        "branch_id": entry.branch_id,
        "performed_by_user_id": entry.performed_by_user_id,
        "performed_by_user_name": entry.performed_by_user_name,
        "timestamp": _iso(entry.timestamp),
        "reason": entry.reason,
        "ip_address": entry.ip_address,
    }


# -------------------- decoding full records (persistence) --------------------


def ticket_from_message(msg: dict[str, Any]) -> Ticket:
    fb = msg.get("feedback")
    return Ticket(
        id=str(msg["id"]),
        number=str(msg["number"]),
        service_type=parse_service_type(msg["service_type"]),
        status=parse_ticket_status(msg["status"]),
        created_time=parse_time(msg["created_time"], "created_time"),
        priority_score=int(msg["priority_score"]),
        sequence=int(msg.get("sequence", 0)),
        branch_id=msg.get("branch_id"),
        counter_id=msg.get("counter_id"),
        called_time=parse_time(msg.get("called_time"), "called_time"),
        completed_time=parse_time(msg.get("completed_time"), "completed_time"),
        requeued_time=parse_time(msg.get("requeued_time"), "requeued_time"),
        recall_count=int(msg.get("recall_count", 0)),
        moved_to_end_count=int(msg.get("moved_to_end_count", 0)),
        customer=customer_from_message(msg.get("customer")),
        remarks=tuple(
            Remark(text=str(r["text"]), created_time=parse_time(r["created_time"], "created_time"))
            for r in msg.get("remarks") or []
        ),
        served_by_user_id=msg.get("served_by_user_id"),
        is_booking=bool(msg.get("is_booking", False)),
        feedback=None
        if not fb
        else Feedback(
            rating=int(fb["rating"]),
            comment=fb.get("comment"),
            tags=tuple(fb.get("tags") or ()),
            submitted_time=parse_time(fb["submitted_time"], "submitted_time"),
        ),
        version=int(msg.get("version", 1)),
    )


def counter_from_message(msg: dict[str, Any]) -> Counter:
    return Counter(
        id=str(msg["id"]),
        name=str(msg["name"]),
        branch_id=msg.get("branch_id"),
        status=parse_counter_status(msg.get("status", CounterStatus.OFFLINE.value)),
        service_tags=frozenset(parse_service_type(t) for t in msg.get("service_tags") or ()),
        current_ticket_id=msg.get("current_ticket_id"),
        last_served_ticket_id=msg.get("last_served_ticket_id"),
        assigned_user_id=msg.get("assigned_user_id"),
        version=int(msg.get("version", 1)),
    )


def audit_from_message(msg: dict[str, Any]) -> CounterAssignmentAuditEntry:
    return CounterAssignmentAuditEntry(
        id=str(msg["id"]),
        counter_id=str(msg["counter_id"]),
        counter_name=str(msg["counter_name"]),
        action=AssignmentAction(msg["action"]),
        timestamp=parse_time(msg["timestamp"], "timestamp"),
        branch_id=msg.get("branch_id"),
        user_id=msg.get("user_id"),
        user_name=msg.get("user_name"),
        user_email=msg.get("user_email"),
        previous_user_id=msg.get("previous_user_id"),
        previous_user_name=msg.get("previous_user_name"),
        performed_by_user_id=msg.get("performed_by_user_id"),
        performed_by_user_name=msg.get("performed_by_user_name"),
        reason=msg.get("reason"),
        ip_address=msg.get("ip_address"),
    )

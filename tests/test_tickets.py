from dataclasses import replace

import pytest

from bank_queue.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from bank_queue.models import Actor, CounterStatus, Customer, CustomerSegment, ServiceType, TicketStatus
from bank_queue.tickets import check_invariants


def online(manager, cid, *tags, branch="B01"):
    return manager.register_counter(cid, branch, set(tags), status=CounterStatus.ONLINE, counter_id=cid)


def issue(manager, service=ServiceType.DEPOSIT, branch="B01", customer=None):
    return manager.issue_ticket(service, branch, customer).ticket


def ticket_in(manager, status):
    """A fresh ticket driven into `status` at counter C1."""
    t = issue(manager)
    if status is TicketStatus.WAITING:
        return t
    if status is TicketStatus.MISSED:
        return manager.mark_missed(t.id)
    result = manager.call_next("C1")
    assert result.ticket.id == t.id
    if status is TicketStatus.CALLED:
        return result.ticket
    t = manager.begin_service(t.id)
    if status is TicketStatus.SERVING:
        return t
    assert status is TicketStatus.COMPLETED
    return manager.complete(t.id)


def test_issue_creates_waiting_ticket(manager, clock):
    t = issue(manager, customer=Customer(name="Hoa", segment=CustomerSegment.GOLD))

    assert t.status is TicketStatus.WAITING
    assert t.number == "A001"
    assert t.priority_score == 10 + 500
    assert t.created_time == clock.now
    assert t.counter_id is None and t.called_time is None and t.completed_time is None
    assert t.recall_count == 0 and t.moved_to_end_count == 0
    assert manager.get_ticket(t.id) == t


def test_issue_rejects_unknown_or_inactive_branch(manager):
    with pytest.raises(ValidationError):
        issue(manager, branch="NOPE")
    with pytest.raises(ValidationError):
        issue(manager, branch="B99")
    assert manager.list_tickets() == []


def test_issue_without_branch_is_allowed(manager):
    t = issue(manager, branch=None)
    assert t.branch_id is None
    assert t.number == "A001"


def test_full_lifecycle_field_changes(manager, clock):
    online(manager, "C1", ServiceType.DEPOSIT)
    t = issue(manager)

    clock.advance(60)
    called = manager.call_next("C1").ticket
    assert called.status is TicketStatus.CALLED
    assert called.counter_id == "C1"
    assert called.called_time == clock.now
    assert manager.list_counters()[0].current_ticket_id == t.id

    recalled = manager.recall(t.id)
    assert recalled.status is TicketStatus.CALLED
    assert recalled.recall_count == 1

    serving = manager.begin_service(t.id)
    assert serving.status is TicketStatus.SERVING
    assert manager.recall(t.id).recall_count == 2

    clock.advance(120)
    done = manager.complete(t.id)
    assert done.status is TicketStatus.COMPLETED
    assert done.completed_time == clock.now
    counter = manager.list_counters()[0]
    assert counter.current_ticket_id is None
    assert counter.last_served_ticket_id == t.id


def test_mark_missed_from_waiting(manager):
    t = issue(manager)
    missed = manager.mark_missed(t.id)
    assert missed.status is TicketStatus.MISSED
    assert missed.called_time is None


@pytest.mark.parametrize(
    "status, action",
    [
        (TicketStatus.WAITING, "complete"),
        (TicketStatus.WAITING, "begin_service"),
        (TicketStatus.WAITING, "recall"),
        (TicketStatus.WAITING, "transfer"),
        (TicketStatus.WAITING, "move_to_end"),
        (TicketStatus.CALLED, "complete"),
        (TicketStatus.CALLED, "mark_missed"),
        (TicketStatus.SERVING, "begin_service"),
        (TicketStatus.SERVING, "mark_missed"),
        (TicketStatus.COMPLETED, "recall"),
        (TicketStatus.COMPLETED, "complete"),
        (TicketStatus.COMPLETED, "transfer"),
        (TicketStatus.COMPLETED, "move_to_end"),
        (TicketStatus.COMPLETED, "mark_missed"),
        (TicketStatus.MISSED, "begin_service"),
        (TicketStatus.MISSED, "recall"),
        (TicketStatus.MISSED, "transfer"),
        (TicketStatus.MISSED, "mark_missed"),
    ],
)
def test_illegal_transitions_are_rejected(manager, status, action):
    online(manager, "C1", ServiceType.DEPOSIT, ServiceType.LOAN)
    t = ticket_in(manager, status)

    calls = {
        "complete": lambda: manager.complete(t.id),
        "begin_service": lambda: manager.begin_service(t.id),
        "recall": lambda: manager.recall(t.id),
        "transfer": lambda: manager.transfer(t.id, ServiceType.LOAN),
        "move_to_end": lambda: manager.move_to_end(t.id, "stepped out"),
        "mark_missed": lambda: manager.mark_missed(t.id),
    }
    with pytest.raises(InvalidTransitionError):
        calls[action]()
    assert manager.get_ticket(t.id) == t


def test_unknown_ticket(manager):
    with pytest.raises(NotFoundError):
        manager.begin_service("nope")


def test_stale_version_is_a_conflict(manager):
    t = issue(manager)
    with pytest.raises(ConflictError):
        manager.tickets.call(t.id, "C1", expected_version=t.version + 1)
    assert manager.get_ticket(t.id).status is TicketStatus.WAITING


def test_append_remark(manager):
    online(manager, "C1", ServiceType.DEPOSIT)
    done = ticket_in(manager, TicketStatus.COMPLETED)
    t = issue(manager)
    t = manager.append_remark(t.id, "needs a translator")
    assert [r.text for r in t.remarks] == ["needs a translator"]

    with pytest.raises(ValidationError):
        manager.append_remark(t.id, "   ")

    with pytest.raises(InvalidTransitionError):
        manager.append_remark(done.id, "too late")


def test_update_customer_info_keeps_segment(manager):
    t = issue(manager, customer=Customer(name="Hoa", segment=CustomerSegment.DIAMOND))
    t = manager.update_customer_info(t.id, phone="0900", note="prefers Vietnamese")

    assert t.customer.segment is CustomerSegment.DIAMOND
    assert t.customer.phone == "0900"
    assert t.customer.note == "prefers Vietnamese"
    assert t.customer.email is None


def test_update_customer_info_on_anonymous_ticket(manager):
    t = issue(manager)
    t = manager.update_customer_info(t.id, email="x@example.com")
    assert t.customer.email == "x@example.com"
    assert t.customer.segment is CustomerSegment.REGULAR


def test_feedback_rules(manager):
    online(manager, "C1", ServiceType.DEPOSIT)
    done = ticket_in(manager, TicketStatus.COMPLETED)
    waiting = issue(manager)
    with pytest.raises(InvalidTransitionError):
        manager.submit_feedback(waiting.id, 5)

    for bad in (0, 6, "5", True):
        with pytest.raises(ValidationError):
            manager.submit_feedback(done.id, bad)

    rated = manager.submit_feedback(done.id, 4, comment="quick", tags=("friendly",))
    assert rated.feedback.rating == 4
    assert rated.feedback.tags == ("friendly",)

    with pytest.raises(InvalidTransitionError):
        manager.submit_feedback(done.id, 5)


def test_list_tickets_filters(manager, clock):
    online(manager, "C1", ServiceType.DEPOSIT)
    manager.assign_staff("C1", "u1", Actor(user_id="admin", full_name="Branch Admin"))
    a = issue(manager)
    clock.advance(10)
    b = issue(manager, service=ServiceType.LOAN)
    clock.advance(10)
    c = issue(manager, branch="B02")
    manager.call_next("C1")

    assert [t.id for t in manager.list_tickets(service_type=ServiceType.LOAN)] == [b.id]
    assert [t.id for t in manager.list_tickets(branch_id="B02")] == [c.id]
    assert [t.id for t in manager.list_tickets(status=TicketStatus.CALLED)] == [a.id]
    assert [t.id for t in manager.list_tickets(staff_id="u1")] == [a.id]
    assert {t.id for t in manager.list_tickets(from_time=b.created_time)} == {b.id, c.id}
    assert {t.id for t in manager.list_tickets(to_time=b.created_time)} == {a.id, b.id}


def test_store_transition_by_edge_name(manager):
    t = issue(manager)
    store = manager.tickets

    called = store.transition(t.id, "call", "C1")
    assert called.status is TicketStatus.CALLED and called.counter_id == "C1"
    assert store.transition(t.id, "begin_service").status is TicketStatus.SERVING

    with pytest.raises(InvalidTransitionError):
        store.transition(t.id, "call", "C1")
    with pytest.raises(ValidationError):
        store.transition(t.id, "teleport")
    with pytest.raises(NotFoundError):
        store.transition("nope", "recall")


def test_invariant_check_rejects_broken_records(manager):
    online(manager, "C1", ServiceType.DEPOSIT)
    t = issue(manager)
    called = manager.call_next("C1").ticket
    check_invariants(t)
    check_invariants(called)

    with pytest.raises(RuntimeError, match="called_time"):
        check_invariants(replace(t, called_time=called.called_time))
    with pytest.raises(RuntimeError, match="no counter"):
        check_invariants(replace(called, counter_id=None))
    with pytest.raises(RuntimeError, match="completed_time"):
        check_invariants(replace(called, status=TicketStatus.COMPLETED))

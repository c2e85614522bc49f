import pytest

from bank_queue.errors import DependencyUnavailableError, NotFoundError
from bank_queue.events import EventKind
from bank_queue.models import Actor, AssignmentAction, CounterStatus, ServiceType

ADMIN = Actor(user_id="admin", full_name="Branch Admin")


def counters(manager, *ids, branch="B01"):
    for cid in ids:
        manager.register_counter(f"Counter {cid}", branch, {ServiceType.DEPOSIT}, counter_id=cid)


def assignee(manager, cid):
    return next(c for c in manager.list_counters() if c.id == cid).assigned_user_id


def test_first_assignment(manager):
    counters(manager, "A")
    result = manager.assign_staff("A", "u1", ADMIN, reason="morning shift", ip_address="10.0.0.5")

    assert result.changed
    assert result.counter.assigned_user_id == "u1"
    (entry,) = result.entries
    assert entry.action is AssignmentAction.ASSIGNED
    assert entry.counter_id == "A"
    assert entry.counter_name == "Counter A"
    assert (entry.user_id, entry.user_name, entry.user_email) == ("u1", "An Tran", "an@example.com")
    assert entry.previous_user_id is None
    assert (entry.performed_by_user_id, entry.performed_by_user_name) == ("admin", "Branch Admin")
    assert entry.reason == "morning shift"
    assert entry.ip_address == "10.0.0.5"
    assert entry.branch_id == "B01"


def test_moving_staff_releases_the_old_counter(manager):
    counters(manager, "A", "B")
    manager.assign_staff("A", "u1", ADMIN)

    result = manager.assign_staff("B", "u1", ADMIN)

    assert assignee(manager, "A") is None
    assert assignee(manager, "B") == "u1"
    assert result.released_counter.id == "A"
    assert [(e.counter_id, e.action) for e in result.entries] == [
        ("A", AssignmentAction.UNASSIGNED),
        ("B", AssignmentAction.ASSIGNED),
    ]
    released = result.entries[0]
    assert released.previous_user_id == "u1"
    assert released.previous_user_name == "An Tran"
    assert released.user_id is None
    assert len(manager.list_audit()) == 3


def test_reassigning_an_occupied_counter(manager):
    counters(manager, "A", "B")
    manager.assign_staff("A", "u1", ADMIN)
    manager.assign_staff("B", "u2", ADMIN)

    result = manager.assign_staff("B", "u1", ADMIN)

    assert [(e.counter_id, e.action) for e in result.entries] == [
        ("A", AssignmentAction.UNASSIGNED),
        ("B", AssignmentAction.REASSIGNED),
    ]
    assert result.entries[1].previous_user_id == "u2"
    assert result.entries[1].previous_user_name == "Binh Le"
    assert manager.counters.find_by_user("u2") is None
    assert manager.counters.find_by_user("u1").id == "B"


def test_same_assignee_is_a_no_op(manager):
    counters(manager, "A")
    manager.assign_staff("A", "u1", ADMIN)
    version = manager.list_counters()[0].version

    result = manager.assign_staff("A", "u1", ADMIN)

    assert not result.changed
    assert manager.list_counters()[0].version == version
    assert len(manager.list_audit()) == 1


def test_unassign(manager):
    counters(manager, "A")
    manager.assign_staff("A", "u1", ADMIN)

    result = manager.assign_staff("A", None, ADMIN, reason="end of shift")

    assert assignee(manager, "A") is None
    (entry,) = result.entries
    assert entry.action is AssignmentAction.UNASSIGNED
    assert entry.previous_user_id == "u1"


def test_unassign_while_serving(manager):
    manager.register_counter("Counter A", "B01", {ServiceType.DEPOSIT}, status=CounterStatus.ONLINE, counter_id="A")
    manager.assign_staff("A", "u1", ADMIN)
    t = manager.issue_ticket(ServiceType.DEPOSIT, "B01").ticket
    manager.call_next("A")

    manager.assign_staff("A", None, ADMIN)

    counter = manager.list_counters()[0]
    assert counter.assigned_user_id is None
    assert counter.current_ticket_id == t.id


def test_unknown_user_or_counter(manager):
    counters(manager, "A")
    with pytest.raises(NotFoundError):
        manager.assign_staff("A", "ghost", ADMIN)
    with pytest.raises(NotFoundError):
        manager.assign_staff("Z", "u1", ADMIN)
    assert manager.list_audit() == []


def test_failed_audit_write_restores_both_counters(make_manager, flaky):
    m = make_manager(persistence=flaky)
    counters(m, "A", "B")
    m.assign_staff("A", "u1", ADMIN)

    flaky.failing = {"append_audit"}
    with pytest.raises(DependencyUnavailableError):
        m.assign_staff("B", "u1", ADMIN)

    assert assignee(m, "A") == "u1"
    assert assignee(m, "B") is None
    assert len(m.list_audit()) == 1


def test_assignment_events(manager):
    counters(manager, "A", "B")
    manager.assign_staff("A", "u1", ADMIN)
    seen = []
    manager.subscribe(seen.append)

    manager.assign_staff("B", "u1", ADMIN)

    assert [(e.kind, e.entity_id) for e in seen] == [
        (EventKind.COUNTER_UPDATED, "A"),
        (EventKind.COUNTER_UPDATED, "B"),
    ]


def test_audit_is_newest_first_and_filterable(manager, clock):
    counters(manager, "A", "B")
    counters(manager, "X", branch="B02")

    t0 = clock.now
    manager.assign_staff("A", "u1", ADMIN)
    clock.advance(60)
    manager.assign_staff("B", "u2", ADMIN)
    clock.advance(60)
    manager.assign_staff("X", "u1", ADMIN)

    everything = manager.list_audit()
    assert [e.timestamp for e in everything] == sorted((e.timestamp for e in everything), reverse=True)
    assert [(e.counter_id, e.action) for e in everything] == [
        ("X", AssignmentAction.ASSIGNED),
        ("A", AssignmentAction.UNASSIGNED),
        ("B", AssignmentAction.ASSIGNED),
        ("A", AssignmentAction.ASSIGNED),
    ]

    assert [e.counter_id for e in manager.list_audit(branch_id="B02")] == ["X"]
    assert [e.counter_id for e in manager.list_audit(counter_id="A")] == ["A", "A"]
    # The user filter also matches entries where the user was the one released.
    assert [e.counter_id for e in manager.list_audit(user_id="u1")] == ["X", "A", "A"]
    assert [e.counter_id for e in manager.list_audit(user_id="u2")] == ["B"]
    assert [e.counter_id for e in manager.list_audit(from_time=t0, to_time=t0)] == ["A"]
    assert len(manager.list_audit(from_time=clock.now)) == 2

from bank_queue.display import DisplayBoard, format_event, format_status
from bank_queue.kiosk import check_in_booking, format_slip, issue_ticket
from bank_queue.models import Actor, CounterStatus, CustomerSegment, ServiceType, TicketStatus
from bank_queue.terminal import run_terminal


def test_kiosk_issue_and_slip(loopback, manager):
    manager.register_counter("Counter 01", "B01", {ServiceType.DEPOSIT}, status=CounterStatus.ONLINE, counter_id="1")

    resp = issue_ticket(loopback, service_type=ServiceType.DEPOSIT, branch_id="B01", segment=CustomerSegment.GOLD, name="Hoa")

    assert resp["ticket"]["customer"]["name"] == "Hoa"
    assert format_slip(resp) == (
        "Your number: A001\n"
        "Please wait for Counter 01 (position 1)\n"
        "Estimated wait: ~3 min"
    )


def test_kiosk_booking_without_counter(loopback):
    resp = check_in_booking(loopback, booking_code="VIP-1", branch_id="B01")
    assert resp["ticket"]["number"] == "V001"
    assert "No counter" in format_slip(resp)


def test_terminal_serves_tickets(loopback, manager):
    manager.register_counter("Counter 01", "B01", {ServiceType.DEPOSIT, ServiceType.LOAN}, counter_id="1")
    a = manager.issue_ticket(ServiceType.DEPOSIT, "B01").ticket
    b = manager.issue_ticket(ServiceType.LOAN, "B01").ticket

    served = run_terminal(
        loopback,
        counter_id="1",
        staff_id="u1",
        base_seconds=0.0,
        per_effort_seconds=0.0,
        idle_seconds=0.0,
        max_tickets=2,
    )

    assert served == 2
    assert manager.get_ticket(a.id).status is TicketStatus.COMPLETED
    assert manager.get_ticket(b.id).served_by_user_id == "u1"
    counter = manager.list_counters()[0]
    assert counter.status is CounterStatus.ONLINE
    assert counter.assigned_user_id == "u1"
    assert counter.last_served_ticket_id == b.id
    (entry,) = manager.list_audit()
    assert entry.performed_by_user_id == "u1"


def test_terminal_after_manual_assignment(loopback, manager):
    manager.register_counter("Counter 01", "B01", {ServiceType.DEPOSIT}, counter_id="1")
    manager.assign_staff("1", "u2", Actor(user_id="admin", full_name="Branch Admin"))
    manager.issue_ticket(ServiceType.DEPOSIT, "B01")

    assert run_terminal(loopback, counter_id="1", base_seconds=0.0, per_effort_seconds=0.0, max_tickets=1) == 1
    assert manager.list_tickets()[0].served_by_user_id == "u2"


def test_format_called_event():
    msg = {
        "type": "ticket_called",
        "data": {"number": "A001", "counter_name": "Counter 01", "ticket": {"recall_count": 0}},
    }
    assert format_event(msg) == "Number A001, please go to Counter 01"

    msg["data"]["ticket"]["recall_count"] = 2
    assert format_event(msg) == "Number A001, please go to Counter 01 (call 3)"


def test_format_other_events():
    missed = {"type": "ticket_updated", "data": {"number": "L004", "ticket": {"status": 4}}}
    assert format_event(missed) == "Number L004 missed"

    serving = {"type": "ticket_updated", "data": {"number": "L004", "ticket": {"status": 2}}}
    assert format_event(serving) is None

    counter = {"type": "counter_updated", "data": {"counter": {"name": "VIP Counter", "status": 2}}}
    assert format_event(counter) == "VIP Counter is PAUSED"

    assert format_event({"type": "ticket_created", "data": {}}) is None


def test_format_status():
    line = format_status(
        {
            "waiting": 3,
            "waiting_by_service": {"DEPOSIT": 2, "LOAN": 1, "VIP": 0},
            "serving": 1,
            "completed_today": 7,
            "average_wait_seconds": 90.0,
        }
    )
    assert line == "waiting 3 (DEPOSIT=2, LOAN=1), serving 1, done today 7, avg wait 1.5 min"


def test_display_skips_duplicates_and_stale_events():
    board = DisplayBoard(mqtt_host="127.0.0.1", mqtt_port=1883, namespace="test/ns")
    called = {
        "type": "ticket_called",
        "entity_id": "t1",
        "version": 2,
        "data": {"number": "A001", "counter_name": "Counter 01", "ticket": {"recall_count": 0}},
    }
    topic = "test/ns/branches/B01/events"

    assert board.render(topic, called) == "Number A001, please go to Counter 01"
    assert board.render(topic, called) is None
    assert board.render(topic, {**called, "version": 1}) is None

    status = {"branch_id": "B01", "waiting": 0, "waiting_by_service": {}}
    assert board.render("test/ns/branches/B01/status", status).startswith("[status B01] waiting 0")

from bank_queue.models import CounterStatus, ServiceType
from bank_queue.mqtt_topics import branch_events, branch_status, engine_requests

NS = "test/ns"
REPLY = "test/ns/engine/responses/kiosk-1"


def request(service, fake_mqtt, message, corr_id="c1"):
    service._handle_message(engine_requests(NS), {**message, "corr_id": corr_id, "reply_to": REPLY})
    return fake_mqtt.on(REPLY)[-1]


def test_issue_ticket_reply_is_correlated(service, fake_mqtt):
    reply = request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 0, "branch_id": "B01"}, corr_id="x9")

    assert reply["type"] == "ticket_issued"
    assert reply["corr_id"] == "x9"
    assert reply["ticket"]["number"] == "A001"
    assert reply["ticket"]["status"] == 0


def test_customer_segment_on_the_wire(service, fake_mqtt):
    reply = request(
        service,
        fake_mqtt,
        {"type": "issue_ticket", "service_type": "DEPOSIT", "branch_id": "B01", "customer": {"segment": 1}},
    )
    assert reply["ticket"]["priority_score"] == 510


def test_validation_errors_become_envelopes(service, fake_mqtt):
    reply = request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 42})
    assert reply["type"] == "error"
    assert reply["code"] == "bad_request"
    assert reply["corr_id"] == "c1"

    reply = request(service, fake_mqtt, {"type": "complete"})
    assert reply["code"] == "bad_request"

    reply = request(service, fake_mqtt, {"type": "teleport"})
    assert reply["code"] == "bad_request"


def test_domain_errors_keep_their_code(service, fake_mqtt):
    reply = request(service, fake_mqtt, {"type": "call_next", "counter_id": "nope"})
    assert (reply["code"], reply["entity_id"]) == ("not_found", "nope")

    issued = request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 0, "branch_id": "B01"})
    reply = request(service, fake_mqtt, {"type": "complete", "ticket_id": issued["ticket"]["id"]})
    assert reply["code"] == "invalid_transition"


def test_unexpected_failures_are_reported(service, fake_mqtt, monkeypatch):
    def boom(branch_id=None):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service.manager, "queue_stats", boom)
    reply = request(service, fake_mqtt, {"type": "queue_stats", "branch_id": "B01"})
    assert reply["code"] == "internal_error"


def test_requests_without_reply_topic_are_ignored(service, fake_mqtt):
    service._handle_message(engine_requests(NS), {"type": "issue_ticket", "service_type": 0})
    assert fake_mqtt.published == []
    assert service.manager.list_tickets() == []


def test_other_topics_are_ignored(service, fake_mqtt):
    service._handle_message(f"{NS}/something/else", {"type": "issue_ticket", "service_type": 0, "reply_to": REPLY})
    assert fake_mqtt.published == []


def test_counter_flow_over_requests(service, fake_mqtt):
    manager = service.manager
    manager.register_counter("Counter 01", "B01", {ServiceType.DEPOSIT}, counter_id="1")

    reply = request(service, fake_mqtt, {"type": "set_counter_status", "counter_id": "1", "status": "ONLINE"})
    assert reply["counter"]["status"] == CounterStatus.ONLINE.value

    empty = request(service, fake_mqtt, {"type": "call_next", "counter_id": "1"})
    assert empty["type"] == "next_ticket" and empty["ticket"] is None

    request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 0, "branch_id": "B01"})
    called = request(service, fake_mqtt, {"type": "call_next", "counter_id": "1"})
    ticket_id = called["ticket"]["id"]
    assert called["counter"]["current_ticket_id"] == ticket_id

    assert request(service, fake_mqtt, {"type": "recall", "ticket_id": ticket_id})["ticket"]["recall_count"] == 1
    moved = request(service, fake_mqtt, {"type": "move_to_end", "ticket_id": ticket_id, "reason": "not here"})
    assert moved["ticket"]["moved_to_end_count"] == 1

    request(service, fake_mqtt, {"type": "call_next", "counter_id": "1"})
    request(service, fake_mqtt, {"type": "begin_service", "ticket_id": ticket_id})
    request(service, fake_mqtt, {"type": "append_remark", "ticket_id": ticket_id, "text": "all good"})
    done = request(service, fake_mqtt, {"type": "complete", "ticket_id": ticket_id})
    assert done["ticket"]["status"] == 3

    rated = request(service, fake_mqtt, {"type": "submit_feedback", "ticket_id": ticket_id, "rating": 5, "tags": ["kind"]})
    assert rated["ticket"]["feedback"]["rating"] == 5

    listed = request(service, fake_mqtt, {"type": "list_tickets", "status": "COMPLETED"})
    assert [t["id"] for t in listed["tickets"]] == [ticket_id]


def test_transfer_and_customer_info_requests(service, fake_mqtt):
    manager = service.manager
    manager.register_counter("Counter 01", "B01", {ServiceType.DEPOSIT}, status=CounterStatus.ONLINE, counter_id="1")
    issued = request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 0, "branch_id": "B01"})
    ticket_id = issued["ticket"]["id"]
    request(service, fake_mqtt, {"type": "call_next", "counter_id": "1"})

    info = request(service, fake_mqtt, {"type": "update_customer_info", "ticket_id": ticket_id, "phone": "0900"})
    assert info["ticket"]["customer"]["phone"] == "0900"

    moved = request(service, fake_mqtt, {"type": "transfer", "ticket_id": ticket_id, "service_type": "LOAN"})
    assert moved["ticket"]["service_type"] == ServiceType.LOAN.value
    assert moved["ticket"]["status"] == 0

    missed = request(service, fake_mqtt, {"type": "mark_missed", "ticket_id": ticket_id})
    assert missed["ticket"]["status"] == 4


def test_assign_staff_and_audit_requests(service, fake_mqtt):
    service.manager.register_counter("Counter 01", "B01", {ServiceType.DEPOSIT}, counter_id="1")
    admin = {"user_id": "admin", "full_name": "Branch Admin", "role": "ADMIN"}

    reply = request(service, fake_mqtt, {"type": "assign_staff", "counter_id": "1", "user_id": "u1", "performed_by": admin})
    assert reply["type"] == "assignment"
    assert reply["counter"]["assigned_user_id"] == "u1"
    assert [e["action"] for e in reply["entries"]] == ["ASSIGNED"]

    missing_actor = request(service, fake_mqtt, {"type": "assign_staff", "counter_id": "1", "user_id": "u2"})
    assert missing_actor["code"] == "bad_request"

    audit = request(service, fake_mqtt, {"type": "list_audit", "user_id": "u1"})
    assert [e["performed_by_user_id"] for e in audit["entries"]] == ["admin"]

    counters = request(service, fake_mqtt, {"type": "list_counters", "branch_id": "B01"})
    assert [c["id"] for c in counters["counters"]] == ["1"]


def test_events_are_bridged_to_branch_topics(service, fake_mqtt):
    service.start(publish_status_every=60)
    request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 0, "branch_id": "B01"})
    request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 0})

    b01 = fake_mqtt.on(branch_events("B01", NS))
    assert [m["type"] for m in b01] == ["ticket_created"]
    assert b01[0]["data"]["number"] == "A001"
    assert [m["type"] for m in fake_mqtt.on(branch_events(None, NS))] == ["ticket_created"]
    assert engine_requests(NS) in fake_mqtt.subscribed

    service.stop()
    request(service, fake_mqtt, {"type": "issue_ticket", "service_type": 0, "branch_id": "B01"})
    assert len(fake_mqtt.on(branch_events("B01", NS))) == 1


def test_publish_status_per_branch(service, fake_mqtt):
    service.manager.issue_ticket(ServiceType.LOAN, "B01")
    service.publish_status()

    (snapshot,) = fake_mqtt.on(branch_status("B01", NS))
    assert snapshot["type"] == "queue_stats"
    assert snapshot["waiting"] == 1
    assert len(fake_mqtt.on(branch_status("B02", NS))) == 1

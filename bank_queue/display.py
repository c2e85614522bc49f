from __future__ import annotations

# Hall display (console).
#
# Shows what the waiting-hall screen shows: "Number A001, please go to
# Counter 01" announcements, counter state changes and, every few seconds,
# the branch queue snapshot.
#
# Architecture:
# - MQTT callbacks run on a background thread managed by paho-mqtt.
# - Printing happens on the main thread, so callbacks push incoming messages
#   into a Queue that `run()` drains.
# - Events arrive at-least-once; the board skips anything not newer than what
#   it already showed for the same ticket or counter.

import argparse
import queue
import time
from typing import Any

from .codec import parse_counter_status, parse_ticket_status
from .config import add_mqtt_args, mqtt_settings_from_args
from .errors import QueueError
from .models import TicketStatus
from .mqtt_topics import branch_events, branch_status

_SENTINEL: dict[str, Any] = {}


def format_event(msg: dict[str, Any]) -> str | None:
    """One display line for an engine event, or None if the hall screen ignores it."""
    mtype = msg.get("type")
    data = msg.get("data") or {}

    if mtype == "ticket_called":
        number = data.get("number")
        counter = data.get("counter_name")
        recalls = (data.get("ticket") or {}).get("recall_count", 0)
        line = f"Number {number}, please go to {counter}"
        return f"{line} (call {recalls + 1})" if recalls else line

    if mtype == "ticket_updated":
        ticket = data.get("ticket") or {}
        try:
            status = parse_ticket_status(ticket.get("status"))
        except QueueError:
            return None
        if status is TicketStatus.MISSED:
            return f"Number {data.get('number')} missed"
        if status is TicketStatus.WAITING:
            return f"Number {data.get('number')} back in the queue"
        return None

    if mtype == "counter_updated":
        counter = data.get("counter") or {}
        try:
            status = parse_counter_status(counter.get("status"))
        except QueueError:
            return None
        return f"{counter.get('name')} is {status.name}"

    return None


def format_status(msg: dict[str, Any]) -> str:
    by_service = msg.get("waiting_by_service") or {}
    parts = ", ".join(f"{k}={v}" for k, v in by_service.items() if v)
    avg = msg.get("average_wait_seconds")
    avg_txt = f"{avg / 60:0.1f} min" if isinstance(avg, (int, float)) else "-"
    return (
        f"waiting {msg.get('waiting', 0)} ({parts or 'none'}), serving {msg.get('serving', 0)}, "
        f"done today {msg.get('completed_today', 0)}, avg wait {avg_txt}"
    )


class DisplayBoard:
    def __init__(self, *, mqtt_host: str, mqtt_port: int, namespace: str, branch_id: str | None = None) -> None:
        # Local import so the formatting helpers work without paho-mqtt.
        from .mqtt_client import MqttClient

        self.namespace = namespace
        self.branch_id = branch_id
        self._mqtt = MqttClient(client_id=f"display-{int(time.time())}", host=mqtt_host, port=mqtt_port)
        self._inbox: "queue.Queue[tuple[str, dict[str, Any]]]" = queue.Queue()
        self._seen: dict[tuple[str, str], int] = {}

    def start(self) -> None:
        self._mqtt.start()
        branch = self.branch_id or "+"
        self._mqtt.subscribe(branch_events(branch, self.namespace))
        self._mqtt.subscribe(branch_status(branch, self.namespace))
        # Branch-agnostic tickets are announced everywhere.
        if self.branch_id is not None:
            self._mqtt.subscribe(branch_events(None, self.namespace))
        self._mqtt.add_handler(lambda topic, msg: self._inbox.put((topic, msg)))

    def close(self) -> None:
        self._inbox.put(("", _SENTINEL))
        self._mqtt.stop()

    def render(self, topic: str, msg: dict[str, Any]) -> str | None:
        """Turn one incoming message into a display line (None to skip it)."""
        if topic.endswith("/status"):
            return f"[status {msg.get('branch_id') or '-'}] {format_status(msg)}"

        entity_id = msg.get("entity_id")
        version = msg.get("version")
        if isinstance(entity_id, str) and isinstance(version, int):
            kind = "counter" if msg.get("type") == "counter_updated" else "ticket"
            key = (kind, entity_id)
            if version <= self._seen.get(key, 0):
                return None
            self._seen[key] = version
        return format_event(msg)

    def run(self) -> None:
        while True:
            topic, msg = self._inbox.get()
            if msg is _SENTINEL:
                return
            line = self.render(topic, msg)
            if line:
                print(f"[display] {line}", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Waiting hall display (MQTT)")
    add_mqtt_args(parser)
    parser.add_argument("--branch", default=None, help="only show this branch (default: all)")
    args = parser.parse_args()

    settings = mqtt_settings_from_args(args)
    board = DisplayBoard(
        mqtt_host=settings.host, mqtt_port=settings.port, namespace=settings.namespace, branch_id=args.branch
    )
    board.start()
    print(f"[display] connected to MQTT {settings.host}:{settings.port}, namespace={settings.namespace}")
    try:
        board.run()
    except KeyboardInterrupt:
        pass
    finally:
        board.close()


if __name__ == "__main__":
    main()

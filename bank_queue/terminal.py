from __future__ import annotations

# Counter terminal agent.
#
# A terminal drives one counter:
# - optionally signs a teller in (assign_staff)
# - sets the counter ONLINE
# - repeatedly asks the engine for the next ticket
# - "serves" it by sleeping for the simulated service time, then completes it
#
# The terminal publishes nothing on the event topics itself; the engine
# broadcasts every change it makes.

import argparse
import time

from .client import EngineClient
from .codec import parse_service_type
from .config import add_mqtt_args, mqtt_settings_from_args
from .errors import InvalidTransitionError, NotFoundError, QueueError
from .models import CounterStatus
from .service_time import compute_service_time_seconds


def run_terminal(
    client: EngineClient,
    *,
    counter_id: str,
    staff_id: str | None = None,
    base_seconds: float = 1.0,
    per_effort_seconds: float = 1.0,
    idle_seconds: float = 0.5,
    max_tickets: int | None = None,
) -> int:
    """Serve tickets until interrupted (or `max_tickets` are done). Returns the number served."""
    if staff_id is not None:
        client.request(
            "assign_staff",
            counter_id=counter_id,
            user_id=staff_id,
            performed_by={"user_id": staff_id, "full_name": staff_id, "role": "TELLER"},
            reason="terminal sign-in",
        )

    resp = client.request("set_counter_status", counter_id=counter_id, status=CounterStatus.ONLINE.value)
    name = resp["counter"]["name"]
    print(f"[terminal {name}] online")

    served = 0
    while max_tickets is None or served < max_tickets:
        try:
            msg = client.request("call_next", counter_id=counter_id)
        except InvalidTransitionError as e:
            # Paused from elsewhere, or a ticket is still open at this counter.
            print(f"[terminal {name}] cannot call: {e}")
            time.sleep(idle_seconds)
            continue

        ticket = msg.get("ticket")
        if ticket is None:
            time.sleep(idle_seconds)
            continue

        number = ticket["number"]
        print(f"[terminal {name}] called {number}")
        client.request("begin_service", ticket_id=ticket["id"])

        st = compute_service_time_seconds(
            service_type=parse_service_type(ticket["service_type"]),
            base_seconds=base_seconds,
            per_effort_seconds=per_effort_seconds,
        )
        time.sleep(st)

        try:
            client.request("complete", ticket_id=ticket["id"])
        except (InvalidTransitionError, NotFoundError) as e:
            # Someone transferred or requeued it from another screen meanwhile.
            print(f"[terminal {name}] {number} not completed: {e}")
            continue
        served += 1
        print(f"[terminal {name}] done {number} ({st:0.1f}s)")
    return served


def main() -> None:
    parser = argparse.ArgumentParser(description="Counter terminal agent (MQTT)")
    add_mqtt_args(parser)
    parser.add_argument("--counter-id", required=True)
    parser.add_argument("--staff-id", default=None, help="teller to sign in at this counter")
    parser.add_argument("--base-seconds", type=float, default=1.0, help="fixed overhead per ticket")
    parser.add_argument("--per-effort-seconds", type=float, default=1.0, help="seconds per unit of service effort")
    parser.add_argument("--max-tickets", type=int, default=None)
    args = parser.parse_args()

    client = EngineClient(name=f"terminal-{args.counter_id}", settings=mqtt_settings_from_args(args))
    try:
        client.start()
        run_terminal(
            client,
            counter_id=args.counter_id,
            staff_id=args.staff_id,
            base_seconds=args.base_seconds,
            per_effort_seconds=args.per_effort_seconds,
            max_tickets=args.max_tickets,
        )
    except KeyboardInterrupt:
        pass
    except QueueError as e:
        print(f"[terminal {args.counter_id}] error: {e}")
        raise SystemExit(1) from e
    finally:
        client.stop()


if __name__ == "__main__":
    main()

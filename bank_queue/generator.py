from __future__ import annotations

# Ticket generator (normal system component).
#
# This process simulates customers walking up to the kiosk and uses the exact
# same MQTT request/response protocol as the interactive `kiosk` CLI.
#
# Poisson arrival model:
# - Customers arrive according to a Poisson process with rate λ (customers/sec)
# - Inter-arrival times are exponential with mean 1/λ
# - Each customer's service type and segment come from a weighted mix

import argparse
import random
import time

from .arrival import sample_exponential_interarrival, sample_segment, sample_service_type
from .client import EngineClient
from .config import MqttSettings, add_mqtt_args, mqtt_settings_from_args
from .errors import QueueError
from .kiosk import check_in_booking, issue_ticket


def run_generator(
    *,
    settings: MqttSettings,
    rate_per_sec: float,
    branch_id: str | None = None,
    max_tickets: int | None = None,
    seed: int | None = None,
    booking_ratio: float = 0.05,
) -> None:
    """Generate kiosk visits indefinitely (or for max_tickets).

    Args:
        rate_per_sec: λ, customers per second.
        max_tickets: if provided, stop after issuing this many tickets.
        seed: if provided, makes arrivals and the service mix deterministic.
        booking_ratio: share of visitors checking in an appointment.
    """
    rng = random.Random(seed) if seed is not None else random.Random()

    client = EngineClient(name="generator", settings=settings)
    client.start()

    print(
        f"[generator] connected to MQTT {settings.host}:{settings.port}, namespace={settings.namespace}, "
        f"rate={rate_per_sec} cust/s"
    )

    i = 0
    try:
        while max_tickets is None or i < max_tickets:
            # Wait for the next arrival.
            dt = sample_exponential_interarrival(rate_per_sec=rate_per_sec, rng=rng)
            time.sleep(dt)
            i += 1

            try:
                if rng.random() < booking_ratio:
                    code = f"{'VIP' if rng.random() < 0.3 else 'APT'}-{i:04d}"
                    resp = check_in_booking(client, booking_code=code, branch_id=branch_id)
                    what = f"booking {code}"
                else:
                    service_type = sample_service_type(rng=rng)
                    segment = sample_segment(service_type, rng=rng)
                    resp = issue_ticket(
                        client, service_type=service_type, branch_id=branch_id, segment=segment, name=f"Cust{i}"
                    )
                    what = f"{service_type.name}/{segment.name}"
            except QueueError as e:
                print(f"[generator] visitor {i} -> error {e} (dt={dt:0.2f}s)")
                continue

            print(
                f"[generator] {resp['ticket']['number']} {what} -> {resp.get('suggested_counter') or '-'} "
                f"(pos {resp.get('queue_position')}, dt={dt:0.2f}s)"
            )
        print(f"[generator] reached max_tickets={max_tickets}, stopping")
    except KeyboardInterrupt:
        pass
    finally:
        client.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Ticket generator (Poisson arrivals over MQTT)")
    add_mqtt_args(parser)
    parser.add_argument(
        "--rate",
        type=float,
        required=True,
        help="arrival rate λ in customers/second (Poisson process)",
    )
    parser.add_argument("--branch", default=None)
    parser.add_argument("--max-tickets", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--booking-ratio", type=float, default=0.05)
    args = parser.parse_args()

    run_generator(
        settings=mqtt_settings_from_args(args),
        rate_per_sec=args.rate,
        branch_id=args.branch,
        max_tickets=args.max_tickets,
        seed=args.seed,
        booking_ratio=args.booking_ratio,
    )


if __name__ == "__main__":
    main()

from __future__ import annotations

# Kiosk client.
#
# A kiosk visit is a short-lived process:
# - connect to broker
# - publish an issue_ticket (or check_in_booking) request
# - wait for the reply
# - print the ticket slip and exit

import argparse
from typing import Any

from .client import EngineClient
from .codec import parse_segment, parse_service_type
from .config import add_mqtt_args, mqtt_settings_from_args
from .errors import QueueError
from .models import CustomerSegment, ServiceType


def issue_ticket(
    client: EngineClient,
    *,
    service_type: ServiceType,
    branch_id: str | None = None,
    segment: CustomerSegment = CustomerSegment.REGULAR,
    name: str | None = None,
) -> dict[str, Any]:
    customer = {"name": name, "segment": segment.value} if name or segment is not CustomerSegment.REGULAR else None
    return client.request(
        "issue_ticket",
        service_type=service_type.value,
        branch_id=branch_id,
        customer=customer,
    )


def check_in_booking(client: EngineClient, *, booking_code: str, branch_id: str | None = None) -> dict[str, Any]:
    return client.request("check_in_booking", booking_code=booking_code, branch_id=branch_id)


def format_slip(resp: dict[str, Any]) -> str:
    ticket = resp["ticket"]
    lines = [f"Your number: {ticket['number']}"]
    if resp.get("suggested_counter"):
        lines.append(f"Please wait for {resp['suggested_counter']} (position {resp['queue_position']})")
        lines.append(f"Estimated wait: ~{resp['estimated_wait_minutes']} min")
    else:
        lines.append("No counter is serving this right now; please wait to be called")
    return "\n".join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description="Ticket kiosk (MQTT)")
    add_mqtt_args(parser)
    parser.add_argument("--service", default="DEPOSIT", help="DEPOSIT, WITHDRAWAL, LOAN, CONSULTATION or VIP")
    parser.add_argument("--segment", default="REGULAR", help="REGULAR, GOLD or DIAMOND")
    parser.add_argument("--branch", default=None)
    parser.add_argument("--name", default=None)
    parser.add_argument("--booking-code", default=None, help="check in an appointment instead")
    args = parser.parse_args()

    try:
        with EngineClient(name="kiosk", settings=mqtt_settings_from_args(args)) as client:
            if args.booking_code:
                resp = check_in_booking(client, booking_code=args.booking_code, branch_id=args.branch)
            else:
                resp = issue_ticket(
                    client,
                    service_type=parse_service_type(args.service),
                    branch_id=args.branch,
                    segment=parse_segment(args.segment),
                    name=args.name,
                )
    except QueueError as e:
        print(f"[kiosk] error: {e}")
        raise SystemExit(1) from e

    print(format_slip(resp))


if __name__ == "__main__":
    main()

"""MQTT topic helpers.

We keep topic construction in one place so service, terminals, kiosks and
displays agree on naming.

Topic layout under a configurable namespace (default: `bankqueue/v1`):

Request/response:
- `<ns>/engine/requests`
- `<ns>/engine/responses/<client_id>`

Streaming/broadcast:
- `<ns>/branches/<branch_id>/events`
    Ticket and counter events for one branch. Tickets issued without a
    branch go to the `any` branch.
- `<ns>/branches/<branch_id>/status`
    Periodic queue statistics snapshot for one branch.

Several independent demos can share a broker by changing the namespace
(e.g. `--namespace demo/alice`).
"""

from __future__ import annotations

from .config import DEFAULT_NAMESPACE

ANY_BRANCH = "any"


def engine_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/engine/requests"


def engine_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/engine/responses/{client_id}"


def branch_events(branch_id: str | None, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Event stream for a branch.

    Pass `"+"` to subscribe to every branch.
    """
    return f"{namespace}/branches/{branch_id or ANY_BRANCH}/events"


def branch_status(branch_id: str | None, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/branches/{branch_id or ANY_BRANCH}/status"

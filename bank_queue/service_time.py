from __future__ import annotations

# Service time helpers.
#
# We model how long a teller spends on one ticket. Each service type has a
# relative effort (a loan application takes several times a cash deposit):
#   service_time_seconds = base_seconds + per_effort_seconds * effort
#
# This gives you:
# - a fixed overhead (greeting, ID check, printing the receipt)
# - a per-service workload

from .models import ServiceType

SERVICE_EFFORT: dict[ServiceType, float] = {
    ServiceType.DEPOSIT: 1.0,
    ServiceType.WITHDRAWAL: 1.0,
    ServiceType.LOAN: 4.0,
    ServiceType.CONSULTATION: 2.5,
    ServiceType.VIP: 3.0,
}


def compute_service_time_seconds(
    *, service_type: ServiceType, base_seconds: float, per_effort_seconds: float
) -> float:
    """Compute how long a counter should take for a single ticket.

    Args:
        service_type: the ticket's current service type.
        base_seconds: fixed overhead time (>= 0).
        per_effort_seconds: seconds per unit of service effort (>= 0).

    Returns:
        Non-negative float.
    """
    if base_seconds < 0:
        raise ValueError("base_seconds must be >= 0")
    if per_effort_seconds < 0:
        raise ValueError("per_effort_seconds must be >= 0")

    return float(base_seconds + per_effort_seconds * SERVICE_EFFORT.get(service_type, 1.0))

"""Arrival models for ticket generation.

For a Poisson arrival process with rate λ (customers/second):
- The number of arrivals in a time window follows a Poisson distribution.
- The *inter-arrival times* are i.i.d. Exponential(λ).

In practice, we simulate this by repeatedly sampling an exponential waiting time
and sleeping that amount.

What each arriving customer asks for is drawn from a weighted mix of service
types and customer segments.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from typing import TypeVar

from .models import CustomerSegment, ServiceType

T = TypeVar("T")

DEFAULT_SERVICE_MIX: dict[ServiceType, float] = {
    ServiceType.DEPOSIT: 0.35,
    ServiceType.WITHDRAWAL: 0.30,
    ServiceType.LOAN: 0.10,
    ServiceType.CONSULTATION: 0.15,
    ServiceType.VIP: 0.10,
}

DEFAULT_SEGMENT_MIX: dict[CustomerSegment, float] = {
    CustomerSegment.REGULAR: 0.80,
    CustomerSegment.GOLD: 0.15,
    CustomerSegment.DIAMOND: 0.05,
}


def sample_exponential_interarrival(*, rate_per_sec: float, rng: random.Random | None = None) -> float:
    """Sample the next inter-arrival time (seconds) for a Poisson process.

    Args:
        rate_per_sec: λ, the arrival rate in customers/second. Must be > 0.
        rng: optional RNG (useful for deterministic tests).

    Returns:
        A positive float representing seconds until the next arrival.
    """
    if rate_per_sec <= 0:
        raise ValueError("rate_per_sec must be > 0")

    r = rng or random
    return float(r.expovariate(rate_per_sec))


def sample_weighted(mix: Mapping[T, float], *, rng: random.Random | None = None) -> T:
    """Pick one key of `mix` with probability proportional to its weight."""
    keys = [k for k, w in mix.items() if w > 0]
    if not keys:
        raise ValueError("mix needs at least one positive weight")
    r = rng or random
    return r.choices(keys, weights=[mix[k] for k in keys], k=1)[0]


def sample_service_type(*, rng: random.Random | None = None) -> ServiceType:
    return sample_weighted(DEFAULT_SERVICE_MIX, rng=rng)


def sample_segment(service_type: ServiceType, *, rng: random.Random | None = None) -> CustomerSegment:
    # VIP service is only offered to premium customers.
    if service_type is ServiceType.VIP:
        return sample_weighted({CustomerSegment.GOLD: 0.5, CustomerSegment.DIAMOND: 0.5}, rng=rng)
    return sample_weighted(DEFAULT_SEGMENT_MIX, rng=rng)

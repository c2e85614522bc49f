"""Engine tunables and shared command-line options.

Every process is configured from argparse options (see `add_mqtt_args`); the
engine itself takes a `QueueConfig`.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field

from .models import CustomerSegment, ServiceType

DEFAULT_MQTT_HOST = "127.0.0.1"
DEFAULT_MQTT_PORT = 1883
DEFAULT_NAMESPACE = "bankqueue/v1"


def _default_base_priority() -> dict[ServiceType, int]:
    return {
        ServiceType.DEPOSIT: 10,
        ServiceType.WITHDRAWAL: 10,
        ServiceType.LOAN: 10,
        ServiceType.CONSULTATION: 10,
        ServiceType.VIP: 200,
    }


def _default_segment_bonus() -> dict[CustomerSegment, int]:
    return {
        CustomerSegment.REGULAR: 0,
        CustomerSegment.GOLD: 500,
        CustomerSegment.DIAMOND: 1000,
    }


@dataclass(frozen=True)
class QueueConfig:
    base_priority: dict[ServiceType, int] = field(default_factory=_default_base_priority)
    segment_bonus: dict[CustomerSegment, int] = field(default_factory=_default_segment_bonus)

    # Ticket numbers are zero padded to this width (A001).
    sequence_width: int = 3

    # Used for the estimated wait shown at the kiosk.
    minutes_per_ticket: int = 3

    # Upper bound on re-selections after lost claim races in one call_next.
    max_dispatch_attempts: int = 32

    # Seconds between queue snapshots on the branch status topics.
    status_interval: float = 2.0

    def priority_for(self, service_type: ServiceType, segment: CustomerSegment) -> int:
        return self.base_priority.get(service_type, 0) + self.segment_bonus.get(segment, 0)


@dataclass(frozen=True)
class MqttSettings:
    host: str = DEFAULT_MQTT_HOST
    port: int = DEFAULT_MQTT_PORT
    namespace: str = DEFAULT_NAMESPACE


def add_mqtt_args(p: argparse.ArgumentParser, *, namespace: str = DEFAULT_NAMESPACE) -> None:
    p.add_argument("--mqtt-host", default=DEFAULT_MQTT_HOST)
    p.add_argument("--mqtt-port", type=int, default=DEFAULT_MQTT_PORT)
    p.add_argument("--namespace", default=namespace)


def add_logging_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])


def mqtt_settings_from_args(args: argparse.Namespace) -> MqttSettings:
    return MqttSettings(host=args.mqtt_host, port=args.mqtt_port, namespace=args.namespace)


def mqtt_argv(settings: MqttSettings) -> list[str]:
    """Re-serialise settings for a child process command line."""
    return ["--mqtt-host", settings.host, "--mqtt-port", str(settings.port), "--namespace", settings.namespace]

from datetime import datetime, timedelta, timezone

import pytest

from bank_queue.errors import DependencyUnavailableError, raise_for_error
from bank_queue.events import EventBus
from bank_queue.manager import MqttQueueManagerService, QueueManager
from bank_queue.models import Branch, StaffMember, StaffRole
from bank_queue.mqtt_topics import engine_requests
from bank_queue.persistence import MemoryPersistence
from bank_queue.registry import ReferenceData

NAMESPACE = "test/ns"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FlakyPersistence(MemoryPersistence):
    """Memory store whose writes can be made to fail, per method name or all at once ("*")."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: set[str] = set()

    def _check(self, name: str) -> None:
        if name in self.failing or "*" in self.failing:
            raise DependencyUnavailableError(f"{name}: disk unplugged")

    def save_ticket(self, ticket):
        self._check("save_ticket")
        super().save_ticket(ticket)

    def save_counter(self, counter):
        self._check("save_counter")
        super().save_counter(counter)

    def save_counters(self, counters):
        self._check("save_counters")
        super().save_counters(counters)

    def append_audit(self, entries):
        self._check("append_audit")
        super().append_audit(entries)

    def save_sequence(self, scope, value):
        self._check("save_sequence")
        super().save_sequence(scope, value)


class FakeMqtt:
    """Records what the service subscribes to and publishes."""

    def __init__(self) -> None:
        self.subscribed: list[str] = []
        self.handlers = []
        self.published: list[tuple[str, dict]] = []

    def subscribe(self, topic):
        self.subscribed.append(topic)

    def add_handler(self, handler):
        self.handlers.append(handler)

    def publish(self, topic, message):
        self.published.append((topic, message))

    def on(self, topic):
        return [m for t, m in self.published if t == topic]


class LoopbackClient:
    """Stands in for EngineClient: requests go straight into the service's message handler."""

    reply_to = "test/replies/loopback"

    def __init__(self, service: MqttQueueManagerService, mqtt: FakeMqtt) -> None:
        self.service = service
        self.mqtt = mqtt
        self._n = 0

    def request(self, mtype, **fields):
        self._n += 1
        corr_id = f"req-{self._n}"
        msg = {"type": mtype, **fields, "corr_id": corr_id, "reply_to": self.reply_to}
        self.service._handle_message(engine_requests(NAMESPACE), msg)
        reply = self.mqtt.on(self.reply_to)[-1]
        assert reply["corr_id"] == corr_id
        return raise_for_error(reply)


def reference_data() -> ReferenceData:
    return ReferenceData(
        branches=[
            Branch(id="B01", name="Main"),
            Branch(id="B02", name="Riverside", timezone="Asia/Ho_Chi_Minh"),
            Branch(id="B99", name="Closed", active=False),
        ],
        staff=[
            StaffMember(id="admin", full_name="Branch Admin", role=StaffRole.ADMIN, branch_id="B01"),
            StaffMember(id="u1", full_name="An Tran", email="an@example.com", branch_id="B01"),
            StaffMember(id="u2", full_name="Binh Le", email="binh@example.com", branch_id="B01"),
        ],
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_manager(clock):
    managers = []

    def make(**kwargs):
        kwargs.setdefault("reference", reference_data())
        kwargs.setdefault("bus", EventBus(synchronous=True))
        kwargs.setdefault("clock", clock)
        m = QueueManager(**kwargs)
        managers.append(m)
        return m

    yield make
    for m in managers:
        m.close()


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def flaky():
    return FlakyPersistence()


@pytest.fixture
def fake_mqtt():
    return FakeMqtt()


@pytest.fixture
def service(manager, fake_mqtt):
    svc = MqttQueueManagerService(mqtt=fake_mqtt, namespace=NAMESPACE, manager=manager)
    yield svc
    svc.stop()


@pytest.fixture
def loopback(service, fake_mqtt):
    return LoopbackClient(service, fake_mqtt)


@pytest.fixture
def make_reference():
    return reference_data

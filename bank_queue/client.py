from __future__ import annotations

# Request/response client for the queue engine.
#
# Kiosks, terminals and the generator all talk to the engine the same way:
# - connect to the broker
# - listen on a private response topic
# - publish requests on the shared request topic and wait for the reply
#
# Error envelopes from the engine are raised as the matching QueueError.

import time
from typing import Any

from .config import MqttSettings
from .errors import raise_for_error
from .mqtt_client import MqttClient
from .mqtt_topics import engine_requests, engine_responses


class EngineClient:
    def __init__(self, *, name: str, settings: MqttSettings, timeout: float = 5.0) -> None:
        # Unique client id so several kiosks/terminals can run concurrently.
        self.client_id = f"{name}-{int(time.time() * 1000)}"
        self.settings = settings
        self.timeout = timeout
        self.mqtt = MqttClient(client_id=self.client_id, host=settings.host, port=settings.port)
        self._reply_topic = engine_responses(self.client_id, settings.namespace)

    def start(self) -> None:
        self.mqtt.start()
        self.mqtt.subscribe(self._reply_topic)

    def stop(self) -> None:
        self.mqtt.stop()

    def __enter__(self) -> EngineClient:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def request(self, mtype: str, **fields: Any) -> dict[str, Any]:
        resp = self.mqtt.request(
            request_topic=engine_requests(self.settings.namespace),
            response_topic=self._reply_topic,
            message={"type": mtype, **fields},
            timeout=self.timeout,
        )
        return raise_for_error(resp)

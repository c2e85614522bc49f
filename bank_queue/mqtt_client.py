"""JSON-over-MQTT transport for the engine and its clients.

Everything is published with QoS 1 (at-least-once). Replies are matched to
requests by `corr_id`; a reply that arrives twice is dropped. Subscriptions
are remembered and renewed whenever paho reconnects, so a broker restart does
not silently cut a terminal off from its reply topic.

Broker trouble surfaces as `DependencyUnavailableError`, the same error the
engine uses for a failing store, so callers handle both the same way.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .errors import DependencyUnavailableError

log = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]


class MqttClient:
    """paho-mqtt connection with a background loop and a blocking `request()`."""

    def __init__(
        self,
        *,
        client_id: str,
        host: str,
        port: int,
        keepalive: int = 30,
        qos: int = 1,
    ) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive
        self.qos = qos

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._lock = threading.Lock()
        self._handlers: list[MessageHandler] = []
        self._topics: set[str] = set()
        self._waiting: dict[str, "queue.Queue[dict[str, Any]]"] = {}
        self._running = False

    @property
    def topics(self) -> set[str]:
        with self._lock:
            return set(self._topics)

    def start(self) -> None:
        if self._running:
            return
        try:
            self._client.connect(self.host, self.port, keepalive=self.keepalive)
        except OSError as e:
            raise DependencyUnavailableError(f"MQTT broker {self.host}:{self.port} unreachable: {e}") from e
        self._client.loop_start()
        self._running = True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._client.disconnect()
        self._client.loop_stop()

    def add_handler(self, handler: MessageHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def subscribe(self, topic: str) -> None:
        with self._lock:
            self._topics.add(topic)
        self._client.subscribe(topic, qos=self.qos)

    def publish(self, topic: str, message: dict[str, Any]) -> None:
        payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
        info = self._client.publish(topic, payload=payload, qos=self.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise DependencyUnavailableError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def request(
        self,
        *,
        request_topic: str,
        response_topic: str,
        message: dict[str, Any],
        timeout: float = 5.0,
    ) -> dict[str, Any]:
        """Send `message` with a fresh corr_id and block until its reply arrives.

        The caller must already be subscribed to `response_topic`.
        """
        corr_id = uuid.uuid4().hex
        inbox: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=1)
        with self._lock:
            self._waiting[corr_id] = inbox
        try:
            self.publish(request_topic, {**message, "corr_id": corr_id, "reply_to": response_topic})
            return inbox.get(timeout=timeout)
        except queue.Empty as e:
            raise DependencyUnavailableError(
                f"no reply to {message.get('type')} within {timeout:g}s (corr_id={corr_id})"
            ) from e
        finally:
            with self._lock:
                self._waiting.pop(corr_id, None)

    # -------------------- paho callbacks --------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            log.warning("%s: broker refused connection (%s)", self.client_id, reason_code)
            return
        topics = self.topics
        log.info("%s: connected to %s:%d, %d subscription(s)", self.client_id, self.host, self.port, len(topics))
        for topic in topics:
            client.subscribe(topic, qos=self.qos)

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        if self._running:
            log.warning("%s: lost broker connection (%s), reconnecting", self.client_id, reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            data = json.loads(msg.payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("ignoring malformed message on %s", msg.topic)
            return
        if not isinstance(data, dict):
            return

        corr_id = data.get("corr_id")
        with self._lock:
            inbox = self._waiting.get(corr_id) if isinstance(corr_id, str) else None
            handlers = list(self._handlers)
        if inbox is not None:
            try:
                inbox.put_nowait(data)
            except queue.Full:
                log.debug("duplicate reply for corr_id=%s", corr_id)
            return

        for handler in handlers:
            try:
                handler(msg.topic, data)
            except Exception:
                log.exception("handler failed for message on %s", msg.topic)

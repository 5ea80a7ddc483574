"""Publish/subscribe transports between the cloud side and the fleet.

MemoryTransport
    In-process bus with MQTT wildcard matching.  Records every publish so
    tests and dry runs can inspect what would have left the system.

MqttTransport
    paho-mqtt client authenticated with an X.509 client certificate,
    optionally tunnelled over WebSockets.  Reconnects with exponential
    backoff and re-subscribes on every successful connect::

        INIT → CONNECTING → CONNECTED → (drop) → WAIT_BACKOFF → CONNECTING
        CONNECTED → (close) → SHUTTING_DOWN
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

import paho.mqtt.client as mqtt

from fleet_orchestrator.config import TransportConfig
from fleet_orchestrator.errors import TransportError
from fleet_orchestrator.topics import topic_matches

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class FleetTransport(Protocol):
    """What the router needs from a transport."""

    def publish(self, topic: str, payload: bytes) -> None: ...

    def subscribe(self, topic_filter: str, handler: MessageHandler) -> None: ...

    def close(self) -> None: ...


@dataclass
class PublishedMessage:
    topic: str
    payload: bytes


class MemoryTransport:
    """Synchronous in-process transport."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[tuple[str, MessageHandler]] = []
        self.published: list[PublishedMessage] = []

    def publish(self, topic: str, payload: bytes) -> None:
        with self._lock:
            self.published.append(PublishedMessage(topic, payload))
            handlers = [h for f, h in self._subscriptions if topic_matches(f, topic)]
        for handler in handlers:
            handler(topic, payload)

    def subscribe(self, topic_filter: str, handler: MessageHandler) -> None:
        with self._lock:
            self._subscriptions.append((topic_filter, handler))

    def messages_on(self, topic: str) -> list[PublishedMessage]:
        with self._lock:
            return [m for m in self.published if m.topic == topic]

    def close(self) -> None:
        with self._lock:
            self._subscriptions.clear()


class ConnectionState(enum.Enum):
    """States of the MQTT connection."""

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    WAIT_BACKOFF = "WAIT_BACKOFF"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class MqttTransport:
    """paho-mqtt transport.

    Parameters
    ----------
    config:
        Endpoint, TLS material, QoS and reconnect backoff.
    client:
        Pre-built paho client (tests); built from *config* when omitted.
    """

    def __init__(self, config: TransportConfig, client: mqtt.Client | None = None) -> None:
        self._config = config
        self._state = ConnectionState.INIT
        self._subscriptions: list[tuple[str, MessageHandler]] = []
        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._client = client or self._build_client(config)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def state(self) -> ConnectionState:
        return self._state

    def connect(self, timeout: float = 30.0) -> None:
        """Open the connection and start the network loop thread.

        Raises
        ------
        TransportError
            If the broker cannot be reached or does not accept the
            connection within *timeout* seconds.
        """
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._client.connect(
                self._config.endpoint,
                self._config.port,
                keepalive=self._config.keepalive_seconds,
            )
        except OSError as exc:
            raise TransportError(f"Cannot reach {self._config.endpoint}: {exc}") from exc
        self._client.loop_start()
        if not self._connected.wait(timeout):
            raise TransportError(
                f"No CONNACK from {self._config.endpoint} within {timeout:.0f}s"
            )

    def publish(self, topic: str, payload: bytes) -> None:
        info = self._client.publish(topic, payload, qos=self._config.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")
        logger.debug("Published %d bytes to %s (mid=%s)", len(payload), topic, info.mid)

    def subscribe(self, topic_filter: str, handler: MessageHandler) -> None:
        with self._lock:
            self._subscriptions.append((topic_filter, handler))
        if self._state is ConnectionState.CONNECTED:
            self._client.subscribe(topic_filter, qos=self._config.qos)

    def close(self) -> None:
        """Disconnect without reconnecting."""
        self._set_state(ConnectionState.SHUTTING_DOWN)
        self._client.disconnect()
        self._client.loop_stop()

    # ── paho callbacks ──────────────────────────────────────────────

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.error("Broker refused connection: %s", reason_code)
            self._set_state(ConnectionState.WAIT_BACKOFF)
            return
        self._set_state(ConnectionState.CONNECTED)
        with self._lock:
            filters = [f for f, _ in self._subscriptions]
        for topic_filter in filters:
            client.subscribe(topic_filter, qos=self._config.qos)
        self._connected.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        self._connected.clear()
        if self._state is ConnectionState.SHUTTING_DOWN:
            return
        logger.warning("Disconnected from broker (%s), reconnecting with backoff", reason_code)
        self._set_state(ConnectionState.WAIT_BACKOFF)

    def _on_message(self, client, userdata, message) -> None:
        with self._lock:
            handlers = [h for f, h in self._subscriptions if topic_matches(f, message.topic)]
        for handler in handlers:
            try:
                handler(message.topic, message.payload)
            except Exception:
                logger.exception("Handler failed for message on %s", message.topic)

    # ── helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _build_client(config: TransportConfig) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            transport="websockets" if config.websockets else "tcp",
        )
        if config.cert_path or config.ca_path:
            client.tls_set(
                ca_certs=config.ca_path,
                certfile=config.cert_path,
                keyfile=config.key_path,
            )
        reconnect = config.reconnect
        client.reconnect_delay_set(
            min_delay=max(1, reconnect.initial_delay_ms // 1000),
            max_delay=max(1, reconnect.max_delay_ms // 1000),
        )
        return client

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        logger.info("Transport state: %s → %s", old.value, new.value)

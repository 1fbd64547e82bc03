from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
import logging
import ssl
import threading
import time
from typing import Any

import paho.mqtt.client as mqtt

from ups_bridge.config import MqttConfig
from ups_bridge.logging_utils import TRACE_LEVEL

MessageCallback = Callable[[str, str], None]

UNSUBSCRIBE_TIMEOUT_S = 5.0
PUBLISH_LOG_EVERY = 50


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


@dataclass(frozen=True)
class Subscription:
    pattern: str
    callback: MessageCallback
    qos: int


def _split(topic: str) -> list[str]:
    return topic.split("/")


def topic_matches(topic: str, pattern: str) -> bool:
    """Match a concrete topic against a subscription pattern.

    ``+`` matches exactly one level. A trailing ``#`` matches any topic that
    agrees with the levels before it, however many levels follow.
    """
    topic_parts = _split(topic)
    pattern_parts = _split(pattern)
    if pattern_parts and pattern_parts[-1] == "#":
        pattern_parts = pattern_parts[:-1]
        if len(topic_parts) < len(pattern_parts):
            return False
    elif len(topic_parts) != len(pattern_parts):
        return False
    for pattern_level, topic_level in zip(pattern_parts, topic_parts):
        if pattern_level != "+" and pattern_level != topic_level:
            return False
    return True


def is_valid_pattern(pattern: str) -> bool:
    if not pattern:
        return False
    parts = _split(pattern)
    for index, part in enumerate(parts):
        if "#" in part and (part != "#" or index != len(parts) - 1):
            return False
        if "+" in part and part != "+":
            return False
    return True


class MqttBus:
    """Thread-safe publish/subscribe adapter over a paho-mqtt client.

    Subscriptions are held in a local pattern table and dispatched here
    rather than through paho's per-topic callbacks, so one arrival reaches
    every matching subscriber. Neither ``subscribe`` nor ``publish`` waits
    for a broker acknowledgement.
    """

    def __init__(
        self,
        config: MqttConfig,
        client_factory: Callable[[str], mqtt.Client] | None = None,
    ) -> None:
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self._client_factory = client_factory or self._build_client
        self._client: mqtt.Client | None = None
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._connected_event = threading.Event()
        self._subscriptions: dict[str, Subscription] = {}
        self._subscriptions_lock = threading.Lock()
        self._unsubscribe_acks: set[int] = set()
        # Mids whose unsubscribe timed out; a late UNSUBACK for them is dropped
        self._abandoned_unsubscribes: set[int] = set()
        self._unsubscribe_cond = threading.Condition()
        self._publish_count = 0
        self._publish_count_lock = threading.Lock()
        self._started = False

    @property
    def availability_topic(self) -> str:
        return f"{self.config.base_topic}/status"

    @property
    def started(self) -> bool:
        """True once a connect succeeded and paho owns reconnection."""
        return self._started

    def is_connected(self) -> bool:
        with self._state_lock:
            return self._state is ConnectionState.CONNECTED and self._client is not None

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            self._state = state

    def _build_client(self, client_id: str) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if self.config.tls_enabled:
            client.tls_set(
                ca_certs=self.config.ca_cert,
                cert_reqs=ssl.CERT_REQUIRED,
            )
        return client

    def connect(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> bool:
        host = host or self.config.host
        port = port or self.config.port
        username = username if username is not None else self.config.username
        password = password if password is not None else self.config.password

        self.logger.info("Connecting to MQTT broker %s:%s", host, port)
        client = self._client_factory(f"{self.config.client_id}_{int(time.time())}")
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_unsubscribe = self._on_unsubscribe
        if username:
            client.username_pw_set(username, password)
        # Last Will and Testament for availability
        client.will_set(self.availability_topic, payload="offline", qos=1, retain=True)
        client.reconnect_delay_set(
            min_delay=self.config.reconnect_min_s,
            max_delay=self.config.reconnect_max_s,
        )

        self._connected_event.clear()
        with self._state_lock:
            self._client = client
        try:
            client.connect(host, port, keepalive=self.config.keepalive)
        except (OSError, ValueError) as exc:
            self.logger.error("MQTT connection to %s:%s failed: %s", host, port, exc)
            self._discard_client(client)
            return False

        client.loop_start()
        if not self._connected_event.wait(self.config.connect_timeout_s) or not self.is_connected():
            self.logger.error("MQTT connection to %s:%s timed out or was refused", host, port)
            # Stops the network thread from retrying the connection in the background.
            client.disconnect()
            client.loop_stop()
            self._discard_client(client)
            return False
        self._started = True
        return True

    def _discard_client(self, client: mqtt.Client) -> None:
        with self._state_lock:
            if self._client is client:
                self._client = None
            self._state = ConnectionState.DISCONNECTED

    def disconnect(self) -> None:
        with self._state_lock:
            client = self._client
            connected = self._state is ConnectionState.CONNECTED
        if client is None:
            return
        if connected:
            client.publish(self.availability_topic, payload="offline", qos=1, retain=True)
        client.loop_stop()
        client.disconnect()
        self._discard_client(client)
        self._started = False
        self.logger.info("Disconnected from MQTT broker")

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code != 0:
            self._set_state(ConnectionState.DISCONNECTED)
            self.logger.error("MQTT broker refused connection: %s", reason_code)
            self._connected_event.set()
            return
        self._set_state(ConnectionState.CONNECTED)
        self.logger.info("Connected to MQTT broker %s:%s", self.config.host, self.config.port)
        client.publish(self.availability_topic, payload="online", qos=1, retain=True)
        # Clean sessions lose broker-side subscriptions on every reconnect.
        with self._subscriptions_lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            client.subscribe(subscription.pattern, qos=subscription.qos)
        if subscriptions:
            self.logger.debug("Restored %s subscription(s)", len(subscriptions))
        self._connected_event.set()

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._set_state(ConnectionState.DISCONNECTED)
        if reason_code == 0:
            self.logger.info("Disconnected from MQTT broker (clean)")
        else:
            self.logger.warning(
                "Connection to MQTT broker lost: %s. Client will reconnect.",
                reason_code,
            )

    def _on_unsubscribe(
        self,
        client: mqtt.Client,
        userdata: Any,
        mid: int,
        reason_codes: Any = None,
        properties: Any = None,
    ) -> None:
        with self._unsubscribe_cond:
            if mid in self._abandoned_unsubscribes:
                self._abandoned_unsubscribes.discard(mid)
                return
            self._unsubscribe_acks.add(mid)
            self._unsubscribe_cond.notify_all()

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        payload = message.payload.decode("utf-8", errors="replace")
        self.dispatch(message.topic, payload)

    def dispatch(self, topic: str, payload: str) -> int:
        """Invoke every callback whose pattern matches ``topic``.

        Returns the number of callbacks invoked. Callback failures are
        logged and do not stop delivery to the others.
        """
        with self._subscriptions_lock:
            matching = [
                sub for sub in self._subscriptions.values() if topic_matches(topic, sub.pattern)
            ]
        for subscription in matching:
            try:
                subscription.callback(topic, payload)
            except Exception:
                self.logger.exception(
                    "Callback for %s failed on topic %s", subscription.pattern, topic
                )
        return len(matching)

    def subscribe(self, pattern: str, callback: MessageCallback, qos: int = 1) -> bool:
        if not is_valid_pattern(pattern):
            self.logger.error("Invalid subscription pattern: %r", pattern)
            return False
        with self._subscriptions_lock:
            self._subscriptions[pattern] = Subscription(pattern, callback, qos)
        with self._state_lock:
            client = self._client if self._state is ConnectionState.CONNECTED else None
        if client is None:
            self.logger.info("Subscription to %s deferred until connected", pattern)
            return True
        result, _mid = client.subscribe(pattern, qos=qos)
        if result == mqtt.MQTT_ERR_NO_CONN:
            self.logger.info("Subscription to %s deferred until reconnected", pattern)
            return True
        if result != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to subscribe to %s, error code: %s", pattern, result)
            return False
        self.logger.info("Subscription to %s (QoS %s) initiated", pattern, qos)
        return True

    def subscribe_multiple(
        self, patterns: Iterable[str], callback: MessageCallback, qos: int = 1
    ) -> bool:
        all_success = True
        for pattern in patterns:
            if not self.subscribe(pattern, callback, qos):
                self.logger.warning("Failed to subscribe to %s", pattern)
                all_success = False
        return all_success

    def unsubscribe(self, pattern: str) -> bool:
        with self._state_lock:
            client = self._client if self._state is ConnectionState.CONNECTED else None
        if client is None:
            self.logger.error("Not connected, cannot unsubscribe from %s", pattern)
            return False
        result, mid = client.unsubscribe(pattern)
        if result != mqtt.MQTT_ERR_SUCCESS or mid is None:
            self.logger.error("Failed to unsubscribe from %s, error code: %s", pattern, result)
            return False
        with self._unsubscribe_cond:
            acked = self._unsubscribe_cond.wait_for(
                lambda: mid in self._unsubscribe_acks, timeout=UNSUBSCRIBE_TIMEOUT_S
            )
            self._unsubscribe_acks.discard(mid)
            if not acked:
                self._abandoned_unsubscribes.add(mid)
        if not acked:
            self.logger.error("Broker did not confirm unsubscribe from %s", pattern)
            return False
        with self._subscriptions_lock:
            self._subscriptions.pop(pattern, None)
        self.logger.info("Unsubscribed from %s", pattern)
        return True

    def subscriptions(self) -> list[str]:
        with self._subscriptions_lock:
            return list(self._subscriptions)

    def publish(self, topic: str, payload: str, qos: int = 1, retain: bool = False) -> bool:
        with self._state_lock:
            client = self._client if self._state is ConnectionState.CONNECTED else None
        if client is None:
            self.logger.debug("Not connected to MQTT broker, dropping publish to %s", topic)
            return False
        result = client.publish(topic, payload=payload, qos=qos, retain=retain)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish to %s, error code: %s", topic, result.rc)
            return False
        if topic.endswith("/state"):
            with self._publish_count_lock:
                self._publish_count += 1
                count = self._publish_count
            self.logger.log(TRACE_LEVEL, "Published %s = %s", topic, payload)
            if count % PUBLISH_LOG_EVERY == 0:
                self.logger.debug("Published %s state messages", count)
        else:
            self.logger.debug(
                "Published to %s (%s bytes)%s",
                topic,
                len(payload),
                " [retained]" if retain else "",
            )
        return True

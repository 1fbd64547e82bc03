from __future__ import annotations

from datetime import datetime, timezone
import logging
import threading
from typing import Protocol

from ups_bridge.discovery import DiscoveryPublisher
from ups_bridge.exceptions import ConnectivityError
from ups_bridge.mqtt_client import MessageCallback
from ups_bridge.sample import DEFAULT_NOMINAL_POWER_W, Sample

POLL_LOG_EVERY = 10
SLEEP_SLICE_S = 1.0
HA_ONLINE_PAYLOAD = "online"


class Bus(Protocol):
    availability_topic: str

    def is_connected(self) -> bool:
        ...

    def publish(self, topic: str, payload: str, qos: int = 1, retain: bool = False) -> bool:
        ...

    def subscribe(self, pattern: str, callback: MessageCallback, qos: int = 1) -> bool:
        ...


class Source(Protocol):
    def connect(self) -> bool:
        ...

    def disconnect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    def get_all_variables(self) -> dict[str, str]:
        ...


def backoff_delay(failures: int, max_backoff_s: float) -> float:
    """Exponential backoff: 1, 2, 4, ... seconds, capped."""
    if failures <= 0:
        return 0.0
    return float(min(2 ** (failures - 1), max_backoff_s))


class SourcePoller:
    """Poll the NUT server, publish each field and keep discovery in sync.

    The discovery flag is cleared whenever a poll sees the bus disconnected,
    so every reconnection produces exactly one re-announcement.
    """

    def __init__(
        self,
        bus: Bus,
        source: Source,
        discovery: DiscoveryPublisher,
        device_id: str,
        root: str = "homeassistant",
        poll_interval_s: float = 60,
        max_backoff_s: float = 60,
        nominal_power_w: float = DEFAULT_NOMINAL_POWER_W,
    ) -> None:
        self.bus = bus
        self.source = source
        self.discovery = discovery
        self.device_id = device_id
        self.root = root
        self.poll_interval_s = poll_interval_s
        self.max_backoff_s = max_backoff_s
        self.nominal_power_w = nominal_power_w
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._discovery_published = False
        self._last_poll_time: datetime | None = None
        self._connect_failures = 0
        self._poll_failures = 0
        self._poll_count = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def discovery_published(self) -> bool:
        with self._lock:
            return self._discovery_published

    @property
    def last_poll_time(self) -> datetime | None:
        with self._lock:
            return self._last_poll_time

    @property
    def ha_status_topic(self) -> str:
        return f"{self.root}/status"

    def setup_subscriptions(self) -> bool:
        """Republish discovery whenever Home Assistant announces it is online."""
        return self.bus.subscribe(self.ha_status_topic, self._on_ha_status, 1)

    def _on_ha_status(self, topic: str, payload: str) -> None:
        if payload.strip().lower() == HA_ONLINE_PAYLOAD:
            self.logger.info("Home Assistant came online, republishing discovery")
            self.republish_discovery()

    def republish_discovery(self) -> bool:
        if not self.bus.is_connected():
            self.logger.warning("Cannot republish discovery while MQTT is disconnected")
            return False
        published = self.discovery.publish_all()
        with self._lock:
            self._discovery_published = published
        return published

    def sync_discovery(self) -> None:
        """Advance the discovery flag for the current bus connectivity."""
        if self.bus.is_connected():
            with self._lock:
                needed = not self._discovery_published
            if needed:
                self.logger.info("Publishing discovery configs")
                published = self.discovery.publish_all()
                with self._lock:
                    self._discovery_published = published
        else:
            with self._lock:
                was_published = self._discovery_published
                self._discovery_published = False
            if was_published:
                self.logger.warning("MQTT disconnected, discovery will be republished on reconnection")

    def poll_and_publish(self) -> bool:
        variables = self.source.get_all_variables()
        if not variables:
            self.logger.warning("No variables retrieved from NUT server, skipping cycle")
            return False

        sample = Sample.from_nut_variables(self.device_id, variables, self.nominal_power_w)
        if not sample.is_valid():
            self.logger.warning(
                "Invalid UPS data (missing %s), skipping cycle",
                ", ".join(sample.missing_required()),
            )
            return False

        self.sync_discovery()

        messages = sample.to_messages(self.root)
        all_success = True
        for message in messages:
            if not self.bus.publish(message.topic, message.payload, message.qos, message.retain):
                all_success = False
                self.logger.debug("Failed to publish %s", message.topic)
        if not all_success:
            self.logger.warning("Some UPS metrics failed to publish")
            return False

        with self._lock:
            self._poll_count += 1
            self._last_poll_time = datetime.now(timezone.utc)
            count = self._poll_count
        if count % POLL_LOG_EVERY == 0:
            self.logger.info("Published %s metrics (%s polls)", len(messages), count)
        return True

    def ensure_source(self) -> bool:
        if self.source.is_connected():
            return True
        if self.source.connect():
            self._connect_failures = 0
            return True
        self._connect_failures += 1
        delay = backoff_delay(self._connect_failures, self.max_backoff_s)
        self.logger.warning("NUT connection failed, retrying in %.0fs", delay)
        self._stop_event.wait(delay)
        return False

    def start(self) -> None:
        if self.is_running():
            self.logger.warning("Poller already running")
            return
        self.logger.info("Starting NUT poller (interval: %ss)", self.poll_interval_s)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="nut-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self.logger.info("Stopping NUT poller")
        self._stop_event.set()
        thread.join()
        self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _sleep_interval(self) -> None:
        remaining = float(self.poll_interval_s)
        while remaining > 0 and not self._stop_event.is_set():
            slice_s = min(SLEEP_SLICE_S, remaining)
            self._stop_event.wait(slice_s)
            remaining -= slice_s

    def _run_loop(self) -> None:
        self.logger.debug("Poller thread started")
        while not self._stop_event.is_set():
            if not self.ensure_source():
                continue
            try:
                self.poll_and_publish()
            except ConnectivityError as exc:
                # upsc -l can keep answering while the UPS query fails (stale driver).
                self._poll_failures += 1
                delay = backoff_delay(self._poll_failures, self.max_backoff_s)
                self.logger.error("NUT poll failed: %s, retrying in %.0fs", exc, delay)
                self._stop_event.wait(delay)
                continue
            except Exception:
                self.logger.exception("Unexpected error in poller loop")
            else:
                self._poll_failures = 0
            self._sleep_interval()
        self.source.disconnect()
        self.logger.debug("Poller thread stopped")

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
import time
from typing import Protocol

from ups_bridge.device_map import DeviceMap
from ups_bridge.exceptions import ValidationError
from ups_bridge.logging_utils import TRACE_LEVEL
from ups_bridge.mqtt_client import MessageCallback
from ups_bridge.sample import DEFAULT_NOMINAL_POWER_W, Sample

SUBSCRIBE_QOS = 1
MESSAGE_LOG_EVERY = 100


class Subscriber(Protocol):
    def subscribe_multiple(
        self, patterns: list[str], callback: MessageCallback, qos: int = 1
    ) -> bool:
        ...


class SampleStore(Protocol):
    def insert_sample(self, sample: Sample, identifier: str) -> bool:
        ...

    def resolve_device_key(self, identifier: str) -> int | None:
        ...

    def log_event(
        self,
        device_key: int,
        event_type: str,
        battery_start: float,
        battery_end: float,
        load: float,
    ) -> bool:
        ...


@dataclass(frozen=True)
class PowerEvent:
    event_type: str
    battery_start: float
    battery_end: float
    load: float


def _as_float(value: object) -> float:
    return float(value) if isinstance(value, (int, float)) else 0.0


class TelemetryAggregator:
    """Merge per-field MQTT updates into per-device samples and persist them.

    Devices are keyed by storage identifier. A device that has never been
    saved is flushed on the next scheduler tick; after that it is flushed
    once ``save_interval_s`` has elapsed since its last successful save.
    """

    def __init__(
        self,
        bus: Subscriber,
        store: SampleStore,
        devices: DeviceMap,
        root: str = "homeassistant",
        save_interval_s: float = 3600,
        tick_s: float = 1.0,
        nominal_power_w: float = DEFAULT_NOMINAL_POWER_W,
    ) -> None:
        self.bus = bus
        self.store = store
        self.devices = devices
        self.root = root
        self.save_interval_s = save_interval_s
        self.tick_s = tick_s
        self.nominal_power_w = nominal_power_w
        self.logger = logging.getLogger(self.__class__.__name__)
        self._samples: dict[str, Sample] = {}
        self._last_saves: dict[str, float] = {}
        self._outage_start: dict[str, float] = {}
        self._pending_events: dict[str, list[PowerEvent]] = {}
        # Devices whose last save attempt was skipped as invalid
        self._invalid: set[str] = set()
        self._data_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._last_save_time: datetime | None = None
        self._message_count = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._root_depth = len(root.split("/"))

    def subscription_patterns(self) -> list[str]:
        return [f"{self.root}/sensor/{device_id}/+/state" for device_id in self.devices.device_ids]

    def setup_subscriptions(self) -> bool:
        patterns = self.subscription_patterns()
        for pattern in patterns:
            self.logger.info("Subscribing to %s", pattern)
        if not self.bus.subscribe_multiple(patterns, self.on_message, SUBSCRIBE_QOS):
            self.logger.warning("Some collector subscriptions failed")
            return False
        self.logger.info("Subscribed to %s device topic(s)", len(patterns))
        return True

    def parse_topic(self, topic: str) -> tuple[str, str] | None:
        # {root}/sensor/{device}/{field}/state
        parts = topic.split("/")
        if len(parts) != self._root_depth + 4:
            return None
        device_key = parts[self._root_depth + 1]
        field_name = parts[self._root_depth + 2]
        if not device_key or not field_name:
            return None
        return device_key, field_name

    def on_message(self, topic: str, payload: str) -> None:
        parsed = self.parse_topic(topic)
        if parsed is None:
            self.logger.log(TRACE_LEVEL, "Ignoring message on unexpected topic %s", topic)
            return
        device_key, field_name = parsed
        identifier = self.devices.storage_identifier(device_key)

        with self._data_lock:
            sample = self._samples.get(identifier)
            if sample is None:
                sample = Sample(device_key=device_key)
                self._samples[identifier] = sample
                self.logger.info("New device detected: %s", identifier)
            was_on_battery = sample.get("power_failure")
            if sample.update_field(field_name, payload, self.nominal_power_w):
                self.logger.log(TRACE_LEVEL, "%s.%s = %s", identifier, field_name, payload)
                self._track_power_event(identifier, sample, was_on_battery)
            self._message_count += 1
            count = self._message_count
            device_count = len(self._samples)

        if count % MESSAGE_LOG_EVERY == 0:
            self.logger.info("Received %s messages from %s devices", count, device_count)

    def _track_power_event(
        self, identifier: str, sample: Sample, was_on_battery: object
    ) -> None:
        # Must be called with _data_lock held
        on_battery = sample.get("power_failure")
        if not isinstance(on_battery, bool) or was_on_battery is None:
            return
        if on_battery == was_on_battery:
            return
        charge = _as_float(sample.get("battery_charge"))
        load = _as_float(sample.get("load_percentage"))
        if on_battery:
            self._outage_start[identifier] = charge
            event = PowerEvent("on_battery", charge, charge, load)
        else:
            start = self._outage_start.pop(identifier, charge)
            event = PowerEvent("power_restored", start, charge, load)
        self._pending_events.setdefault(identifier, []).append(event)
        self.logger.warning("%s: %s (battery %.0f%%)", identifier, event.event_type, charge)

    def start(self) -> None:
        if self.is_running():
            self.logger.warning("Collector already running")
            return
        self.logger.info("Starting collector (save interval: %ss)", self.save_interval_s)
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._scheduled_save_loop, name="collector-saver", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self.logger.info("Stopping collector")
        self._stop_event.set()
        thread.join()
        self._thread = None
        self.flush_all()
        self.logger.info("Collector stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_save_time(self) -> datetime | None:
        with self._status_lock:
            return self._last_save_time

    def device_count(self) -> int:
        with self._data_lock:
            return len(self._samples)

    def snapshot(self, identifier: str) -> Sample | None:
        with self._data_lock:
            sample = self._samples.get(identifier)
            return sample.copy() if sample is not None else None

    def due_devices(self, now: float | None = None) -> list[tuple[str, bool]]:
        """Return (identifier, never_saved) for every device due a flush."""
        now = time.monotonic() if now is None else now
        with self._data_lock:
            due = []
            for identifier in self._samples:
                last_save = self._last_saves.get(identifier)
                if last_save is None:
                    due.append((identifier, True))
                elif now - last_save >= self.save_interval_s:
                    due.append((identifier, False))
            return due

    def save_device(self, identifier: str) -> bool:
        """Flush one device's current sample to the store.

        The sample stays in memory whatever the outcome, so a failed or
        skipped save is retried on the next tick.
        """
        with self._data_lock:
            sample = self._samples.get(identifier)
            snapshot = sample.copy() if sample is not None else None
        if snapshot is None:
            return False
        try:
            snapshot.validate()
        except ValidationError as exc:
            with self._data_lock:
                first_skip = identifier not in self._invalid
                self._invalid.add(identifier)
            if first_skip:
                self.logger.warning("%s, skipping save until it is complete", exc)
            else:
                self.logger.debug("%s, skipping save", exc)
            return False
        with self._data_lock:
            self._invalid.discard(identifier)
        if not self.store.insert_sample(snapshot, identifier):
            self.logger.error("Failed to save metrics for %s, keeping in memory", identifier)
            return False
        with self._data_lock:
            self._last_saves[identifier] = time.monotonic()
        with self._status_lock:
            self._last_save_time = datetime.now(timezone.utc)
        self.logger.debug("Saved metrics for %s", identifier)
        return True

    def flush_events(self) -> None:
        with self._data_lock:
            pending = {key: list(events) for key, events in self._pending_events.items() if events}
        for identifier, events in pending.items():
            device_key = self.store.resolve_device_key(identifier)
            if device_key is None:
                continue
            written = 0
            for event in events:
                if not self.store.log_event(
                    device_key, event.event_type, event.battery_start, event.battery_end, event.load
                ):
                    break
                written += 1
            with self._data_lock:
                queue = self._pending_events.get(identifier, [])
                del queue[:written]

    def run_once(self, now: float | None = None) -> None:
        for identifier, never_saved in self.due_devices(now):
            with self._data_lock:
                quiet = identifier in self._invalid
            if quiet:
                self.logger.debug("Retrying save for incomplete device %s", identifier)
            elif never_saved:
                self.logger.info("Triggering initial save for %s", identifier)
            else:
                self.logger.info("Triggering scheduled save for %s", identifier)
            self.save_device(identifier)
        self.flush_events()

    def flush_all(self) -> None:
        with self._data_lock:
            identifiers = list(self._samples)
        for identifier in identifiers:
            self.save_device(identifier)
        self.flush_events()

    def _scheduled_save_loop(self) -> None:
        self.logger.debug("Saver thread started")
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                self.logger.exception("Unexpected error in collector saver loop")
            self._stop_event.wait(self.tick_s)
        self.logger.debug("Saver thread stopped")

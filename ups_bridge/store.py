"""PostgreSQL persistence for UPS samples.

One shared connection (no pool) guarded by a lock that is held for a single
statement. Every write runs through :meth:`StoreGateway.execute_with_retry`,
which reconnects on demand and gives up after a fixed number of attempts;
callers only ever see ``True``/``False``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import logging
import threading
import time

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import (
    ArgumentError,
    DBAPIError,
    DisconnectionError,
    NoSuchModuleError,
    ResourceClosedError,
    SQLAlchemyError,
)
from sqlalchemy.pool import NullPool

from ups_bridge.exceptions import ResolutionError
from ups_bridge.sample import STORED_FIELDS, Sample

DEVICE_TABLE = "ups_devices"
METRICS_TABLE = "ups_metrics"
EVENTS_TABLE = "power_events"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_RETRIES = 3

Operation = Callable[[Connection], bool]

_LOAD_DEVICES_SQL = text(f"SELECT device_id, device_identifier FROM {DEVICE_TABLE}")
_GET_DEVICE_SQL = text(
    f"SELECT device_id FROM {DEVICE_TABLE} WHERE device_identifier = :identifier"
)
_INSERT_EVENT_SQL = text(
    f"INSERT INTO {EVENTS_TABLE} "
    "(device_id, event_type, battery_level_start, battery_level_end, load_at_event) "
    "VALUES (:device_id, :event_type, :battery_start, :battery_end, :load)"
)


def _build_upsert_sql() -> str:
    columns = ", ".join(("device_id", "timestamp") + STORED_FIELDS)
    values = ", ".join(f":{name}" for name in ("device_id", "timestamp") + STORED_FIELDS)
    updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in STORED_FIELDS)
    return (
        f"INSERT INTO {METRICS_TABLE} ({columns}) VALUES ({values}) "
        f"ON CONFLICT (device_id, timestamp) DO UPDATE SET {updates}"
    )


_UPSERT_METRICS_SQL = text(_build_upsert_sql())


def format_db_timestamp(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime(TIMESTAMP_FORMAT)


def is_connection_broken(exc: BaseException) -> bool:
    if isinstance(exc, (DisconnectionError, ResourceClosedError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class StoreGateway:
    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_s: float = 1.0,
        reconnect_delay_s: float = 2.0,
    ) -> None:
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.reconnect_delay_s = reconnect_delay_s
        self.logger = logging.getLogger(self.__class__.__name__)
        self._engine: Engine | None = None
        self._connection: Connection | None = None
        self._connection_lock = threading.Lock()
        self._device_keys: dict[str, int] = {}
        self._cache_lock = threading.Lock()

    def initialize(self, url: str) -> bool:
        """Open the shared connection and warm the device-key cache.

        An unusable URL leaves the gateway permanently disconnected; an
        unreachable server only until the next operation reconnects.
        """
        try:
            self._engine = create_engine(url, poolclass=NullPool)
        except (ArgumentError, NoSuchModuleError, ImportError) as exc:
            self.logger.error("Invalid database configuration: %s", exc)
            self._engine = None
            return False
        self.logger.info(
            "Initializing database connection to %s",
            self._engine.url.render_as_string(hide_password=True),
        )
        if not self._reconnect():
            self.logger.warning("Initial database connection failed, will retry on first operation")
            return False
        self._load_device_cache()
        return True

    @property
    def configured(self) -> bool:
        """False when the URL could not produce an engine."""
        return self._engine is not None

    def is_connected(self) -> bool:
        with self._connection_lock:
            return self._is_open(self._connection)

    @staticmethod
    def _is_open(connection: Connection | None) -> bool:
        return connection is not None and not connection.closed and not connection.invalidated

    def _reconnect(self) -> bool:
        if self._engine is None:
            return False
        with self._connection_lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                except SQLAlchemyError:
                    self.logger.debug("Error closing stale connection", exc_info=True)
                self._connection = None
            try:
                self._connection = self._engine.connect()
            except SQLAlchemyError as exc:
                self.logger.error("Database connection failed: %s", exc)
                return False
        self.logger.info("Connected to database")
        return True

    def close(self) -> None:
        with self._connection_lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                except SQLAlchemyError as exc:
                    self.logger.error("Error closing database connection: %s", exc)
                self._connection = None
        if self._engine is not None:
            self._engine.dispose()
        self.reset_cache()
        self.logger.info("Database connection closed")

    def reset_cache(self) -> None:
        with self._cache_lock:
            self._device_keys.clear()

    def execute_with_retry(self, operation: Operation, description: str = "operation") -> bool:
        for attempt in range(1, self.max_retries + 1):
            if not self.is_connected():
                if not self._reconnect():
                    time.sleep(self.reconnect_delay_s)
                    continue
            try:
                with self._connection_lock:
                    connection = self._connection
                    if not self._is_open(connection):
                        raise ResourceClosedError("Connection closed before statement")
                    if operation(connection):
                        return True
            except SQLAlchemyError as exc:
                if is_connection_broken(exc):
                    self.logger.error("Database connection broken during %s: %s", description, exc)
                    self._reconnect()
                else:
                    self.logger.error("Database %s failed: %s", description, exc)
            if attempt < self.max_retries:
                self.logger.info(
                    "Retrying %s (attempt %s/%s)", description, attempt + 1, self.max_retries
                )
                time.sleep(self.retry_delay_s)
        self.logger.error("Database %s failed after %s attempts", description, self.max_retries)
        return False

    def _load_device_cache(self) -> None:
        rows: list[tuple[int, str]] = []

        def load(connection: Connection) -> bool:
            with connection.begin():
                result = connection.execute(_LOAD_DEVICES_SQL)
                rows.extend((int(row.device_id), str(row.device_identifier)) for row in result)
            return True

        if not self.execute_with_retry(load, "device cache load"):
            return
        with self._cache_lock:
            self._device_keys.clear()
            for device_id, identifier in rows:
                self._device_keys[identifier] = device_id
            count = len(self._device_keys)
        self.logger.info("Loaded %s devices into cache", count)

    def resolve_device_key(self, identifier: str) -> int | None:
        with self._cache_lock:
            cached = self._device_keys.get(identifier)
        if cached is not None:
            return cached

        found: list[int] = []

        def query(connection: Connection) -> bool:
            with connection.begin():
                row = connection.execute(_GET_DEVICE_SQL, {"identifier": identifier}).first()
            if row is not None:
                found.append(int(row.device_id))
            return True

        if not self.execute_with_retry(query, f"device lookup for {identifier}") or not found:
            return None
        with self._cache_lock:
            self._device_keys[identifier] = found[0]
        return found[0]

    def _require_device_key(self, identifier: str) -> int:
        device_key = self.resolve_device_key(identifier)
        if device_key is None:
            raise ResolutionError(f"Device not found: {identifier}")
        return device_key

    def insert_sample(self, sample: Sample, identifier: str) -> bool:
        try:
            device_key = self._require_device_key(identifier)
        except ResolutionError as exc:
            self.logger.error("%s", exc)
            return False

        timestamp = format_db_timestamp(sample.timestamp)
        params = {"device_id": device_key, "timestamp": timestamp, **sample.stored_values()}

        def upsert(connection: Connection) -> bool:
            with connection.begin():
                connection.execute(_UPSERT_METRICS_SQL, params)
            return True

        if not self.execute_with_retry(upsert, f"metrics insert for {identifier}"):
            return False
        self.logger.info("Inserted metrics for %s at %s", identifier, timestamp)
        return True

    def log_event(
        self,
        device_key: int,
        event_type: str,
        battery_start: float,
        battery_end: float,
        load: float,
    ) -> bool:
        params = {
            "device_id": device_key,
            "event_type": event_type,
            "battery_start": battery_start,
            "battery_end": battery_end,
            "load": load,
        }

        def insert(connection: Connection) -> bool:
            with connection.begin():
                connection.execute(_INSERT_EVENT_SQL, params)
            return True

        if not self.execute_with_retry(insert, f"{event_type} event insert"):
            return False
        self.logger.info("Logged power event %s for device_id=%s", event_type, device_key)
        return True

"""Tests for the persistent store gateway against a SQLite stand-in."""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import DBAPIError, OperationalError

from ups_bridge.sample import Sample
from ups_bridge.store import StoreGateway, format_db_timestamp, is_connection_broken

pytestmark = pytest.mark.database

TIMESTAMP = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)


def make_sample(charge: str = "90", status: str = "OL") -> Sample:
    sample = Sample(device_key="apc_ups")
    sample.update_field("battery_charge", charge)
    sample.update_field("ups_status", status)
    sample.update_field("load_percentage", "20")
    sample.timestamp = TIMESTAMP
    return sample


def fetch_all(url: str, sql: str) -> list:
    engine = create_engine(url)
    try:
        with engine.connect() as connection:
            return list(connection.execute(text(sql)))
    finally:
        engine.dispose()


@pytest.fixture
def statements(gateway):
    """Record every SQL statement the gateway sends."""
    recorded: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany):
        recorded.append(statement)

    event.listen(gateway._engine, "before_cursor_execute", record)
    yield recorded
    event.remove(gateway._engine, "before_cursor_execute", record)


def broken_connection_error() -> DBAPIError:
    return DBAPIError("SELECT 1", {}, Exception("server closed the connection"), connection_invalidated=True)


class TestHelpers:
    """Tests for module helpers."""

    def test_format_db_timestamp_converts_to_utc(self):
        local = datetime.fromisoformat("2024-05-01T14:30:00+02:00")
        assert format_db_timestamp(local) == "2024-05-01 12:30:00"

    def test_is_connection_broken(self):
        assert is_connection_broken(broken_connection_error())
        assert not is_connection_broken(OperationalError("SELECT 1", {}, Exception("locked")))


class TestInitialize:
    """Tests for gateway startup."""

    def test_initialize_loads_device_cache(self, gateway):
        assert gateway.is_connected()
        assert gateway.configured
        assert gateway._device_keys == {"apc_back_ups_xs_1000m": 1, "cyberpower_cp1500": 2}

    def test_unusable_url_is_permanent(self):
        store = StoreGateway(retry_delay_s=0, reconnect_delay_s=0)
        assert not store.initialize("nosuchdialect://localhost/ups")
        assert not store.configured
        assert not store.is_connected()
        assert not store.insert_sample(make_sample(), "apc_back_ups_xs_1000m")

    def test_close_disconnects(self, gateway):
        gateway.close()
        assert not gateway.is_connected()
        assert gateway._device_keys == {}


class TestDeviceKeyCache:
    """Tests for the read-through device-key cache."""

    def test_cached_lookup_issues_no_query(self, gateway, statements):
        assert gateway.resolve_device_key("apc_back_ups_xs_1000m") == 1
        assert statements == []

    def test_miss_queries_once_then_caches(self, gateway, statements):
        fetch_engine = create_engine(gateway._engine.url)
        with fetch_engine.begin() as connection:
            connection.execute(
                text("INSERT INTO ups_devices (device_id, device_identifier) VALUES (3, 'eaton_5e')")
            )
        fetch_engine.dispose()

        assert gateway.resolve_device_key("eaton_5e") == 3
        assert gateway.resolve_device_key("eaton_5e") == 3
        assert len(statements) == 1

    def test_unknown_device_is_not_cached(self, gateway, statements):
        assert gateway.resolve_device_key("unknown_ups") is None
        assert gateway.resolve_device_key("unknown_ups") is None
        assert len(statements) == 2

    def test_reset_cache_requeries(self, gateway, statements):
        gateway.reset_cache()
        assert gateway.resolve_device_key("apc_back_ups_xs_1000m") == 1
        assert len(statements) == 1


class TestInsertSample:
    """Tests for idempotent metric upserts."""

    def test_insert_writes_row(self, gateway, sqlite_url):
        assert gateway.insert_sample(make_sample(), "apc_back_ups_xs_1000m")

        rows = fetch_all(sqlite_url, "SELECT device_id, timestamp, battery_charge, ups_status, load_watts FROM ups_metrics")
        assert len(rows) == 1
        device_id, timestamp, charge, status, load_watts = rows[0]
        assert device_id == 1
        assert timestamp == "2024-05-01 12:30:00"
        assert charge == pytest.approx(90.0)
        assert status == "OL"
        assert load_watts == pytest.approx(120.0)

    def test_same_timestamp_upserts(self, gateway, sqlite_url):
        """Two writes for one (device, timestamp) leave one row with the last values."""
        assert gateway.insert_sample(make_sample(charge="90"), "apc_back_ups_xs_1000m")
        assert gateway.insert_sample(make_sample(charge="75", status="OB"), "apc_back_ups_xs_1000m")

        rows = fetch_all(sqlite_url, "SELECT battery_charge, ups_status, power_failure FROM ups_metrics")
        assert len(rows) == 1
        assert rows[0][0] == pytest.approx(75.0)
        assert rows[0][1] == "OB"
        assert rows[0][2] == 1

    def test_unknown_device_is_rejected(self, gateway, sqlite_url):
        assert not gateway.insert_sample(make_sample(), "unknown_ups")
        assert fetch_all(sqlite_url, "SELECT * FROM ups_metrics") == []


class TestLogEvent:
    """Tests for the append-only power event log."""

    def test_events_append(self, gateway, sqlite_url):
        assert gateway.log_event(1, "on_battery", 100.0, 100.0, 25.0)
        assert gateway.log_event(1, "power_restored", 100.0, 82.0, 24.0)

        rows = fetch_all(
            sqlite_url,
            "SELECT event_type, battery_level_start, battery_level_end, load_at_event "
            "FROM power_events ORDER BY id",
        )
        assert [row[0] for row in rows] == ["on_battery", "power_restored"]
        assert rows[1][2] == pytest.approx(82.0)


class TestRetry:
    """Tests for the retry and reconnect wrapper."""

    def test_reconnects_closed_connection_before_attempt(self, gateway, sqlite_url):
        gateway._connection.invalidate()
        assert not gateway.is_connected()

        assert gateway.insert_sample(make_sample(), "apc_back_ups_xs_1000m")
        assert gateway.is_connected()
        assert len(fetch_all(sqlite_url, "SELECT * FROM ups_metrics")) == 1

    def test_broken_connection_consumes_attempt_then_succeeds(self, gateway):
        operation = Mock(side_effect=[broken_connection_error(), True])
        with patch.object(gateway, "_reconnect", wraps=gateway._reconnect) as reconnect:
            assert gateway.execute_with_retry(operation, "test write")
        assert operation.call_count == 2
        reconnect.assert_called_once()

    def test_exhaustion_returns_false(self, gateway):
        operation = Mock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))
        assert not gateway.execute_with_retry(operation, "test write")
        assert operation.call_count == 3

    def test_failed_reconnect_consumes_attempt(self, gateway):
        operation = Mock(return_value=True)
        gateway._connection.invalidate()
        with patch.object(gateway, "_reconnect", return_value=False) as reconnect:
            assert not gateway.execute_with_retry(operation, "test write")
        assert reconnect.call_count == 3
        operation.assert_not_called()

    def test_retry_delay_between_attempts(self, gateway):
        gateway.retry_delay_s = 0.25
        operation = Mock(side_effect=OperationalError("INSERT", {}, Exception("locked")))
        with patch("ups_bridge.store.time.sleep") as sleep:
            assert not gateway.execute_with_retry(operation, "test write")
        assert [call.args[0] for call in sleep.call_args_list] == [0.25, 0.25]

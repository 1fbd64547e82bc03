"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine, text

from ups_bridge.config import MqttConfig
from ups_bridge.sample import STORED_FIELDS
from ups_bridge.store import StoreGateway

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config" / "example.cfg"

KNOWN_DEVICES = {
    "apc_back_ups_xs_1000m": 1,
    "cyberpower_cp1500": 2,
}

NUT_VARIABLES = {
    "battery.charge": "100",
    "battery.charge.low": "10",
    "battery.charge.warning": "50",
    "battery.runtime": "1800",
    "battery.type": "PbAc",
    "battery.voltage": "13.5",
    "battery.voltage.nominal": "12.0",
    "device.mfr": "American Power Conversion",
    "driver.name": "usbhid-ups",
    "driver.state": "quiet",
    "driver.version": "2.8.1",
    "input.sensitivity": "medium",
    "input.transfer.high": "142",
    "input.transfer.low": "88",
    "input.transfer.reason": "input voltage out of range",
    "input.voltage": "121.0",
    "input.voltage.nominal": "120",
    "ups.beeper.status": "enabled",
    "ups.firmware": "947.d10 .D",
    "ups.load": "25",
    "ups.realpower.nominal": "600",
    "ups.status": "OL",
    "ups.test.result": "No test initiated",
}


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (threads, real timers)"
    )
    config.addinivalue_line(
        "markers", "database: mark test as using a SQLite stand-in for PostgreSQL"
    )


@pytest.fixture
def mqtt_config():
    """Create an MQTT config pointing at a local broker."""
    return MqttConfig(
        host="localhost",
        port=1883,
        base_topic="ups_bridge",
        discovery_topic="homeassistant",
        client_id="ups-bridge-test",
        username=None,
        password=None,
        keepalive=60,
        connect_timeout_s=1.0,
        reconnect_min_s=1,
        reconnect_max_s=8,
        tls_enabled=False,
        ca_cert=None,
    )


@pytest.fixture
def example_config_path():
    """Return the path of the shipped example configuration."""
    return EXAMPLE_CONFIG


@pytest.fixture
def nut_variables():
    """Return a realistic ``upsc`` variable dump for an APC Back-UPS."""
    return dict(NUT_VARIABLES)


@pytest.fixture
def fake_publisher():
    """Create a publisher double that accepts every publish."""
    publisher = Mock()
    publisher.availability_topic = "ups_bridge/status"
    publisher.publish.return_value = True
    publisher.is_connected.return_value = True
    publisher.subscribe.return_value = True
    publisher.subscribe_multiple.return_value = True
    return publisher


@pytest.fixture
def sqlite_url(tmp_path):
    """Create a SQLite database with the bridge's three tables."""
    url = f"sqlite:///{tmp_path / 'ups.db'}"
    metric_columns = ", ".join(STORED_FIELDS)
    engine = create_engine(url)
    with engine.begin() as connection:
        connection.execute(
            text("CREATE TABLE ups_devices (device_id INTEGER PRIMARY KEY, device_identifier TEXT UNIQUE)")
        )
        connection.execute(
            text(
                "CREATE TABLE ups_metrics (device_id INTEGER NOT NULL, timestamp TEXT NOT NULL, "
                f"{metric_columns}, UNIQUE (device_id, timestamp))"
            )
        )
        connection.execute(
            text(
                "CREATE TABLE power_events (id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "device_id INTEGER NOT NULL, event_type TEXT NOT NULL, "
                "battery_level_start REAL, battery_level_end REAL, load_at_event REAL)"
            )
        )
        for identifier, device_id in KNOWN_DEVICES.items():
            connection.execute(
                text("INSERT INTO ups_devices (device_id, device_identifier) VALUES (:id, :ident)"),
                {"id": device_id, "ident": identifier},
            )
    engine.dispose()
    return url


@pytest.fixture
def gateway(sqlite_url):
    """Create an initialized StoreGateway with no retry delays."""
    store = StoreGateway(max_retries=3, retry_delay_s=0, reconnect_delay_s=0)
    assert store.initialize(sqlite_url)
    yield store
    store.close()

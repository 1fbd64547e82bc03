from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote_plus
import configparser

from ups_bridge.exceptions import ConfigError


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    base_topic: str
    discovery_topic: str
    client_id: str
    username: str | None
    password: str | None
    keepalive: int
    connect_timeout_s: float
    reconnect_min_s: int
    reconnect_max_s: int
    tls_enabled: bool
    ca_cert: str | None


@dataclass(frozen=True)
class NutConfig:
    host: str
    port: int
    ups_name: str
    device_id: str
    device_name: str
    manufacturer: str
    model: str
    upsc_path: str
    timeout_s: float
    poll_interval_s: int
    max_backoff_s: int
    nominal_power_w: float
    enabled: bool


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    max_retries: int
    retry_delay_s: float
    reconnect_delay_s: float


@dataclass(frozen=True)
class CollectorConfig:
    enabled: bool
    save_interval_s: int
    tick_s: float


@dataclass(frozen=True)
class DeviceConfig:
    wire_key: str
    storage_identifier: str
    friendly_name: str | None


@dataclass(frozen=True)
class AppConfig:
    mqtt: MqttConfig
    nut: NutConfig
    database: DatabaseConfig
    collector: CollectorConfig
    devices: list[DeviceConfig]


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")


def _build_database_url(parser: configparser.ConfigParser) -> str:
    url = _get_optional(parser.get("database", "url", fallback=None))
    if url:
        return url
    user = parser.get("database", "user", fallback="")
    password = parser.get("database", "password", fallback="")
    credentials = ""
    if user:
        credentials = quote_plus(user)
        if password:
            credentials += ":" + quote_plus(password)
        credentials += "@"
    host = parser.get("database", "host", fallback="localhost")
    port = parser.getint("database", "port", fallback=5432)
    name = parser.get("database", "name", fallback="ups_monitoring")
    return f"postgresql+psycopg2://{credentials}{host}:{port}/{name}"


def _parse_devices(
    parser: configparser.ConfigParser, default_device: str
) -> list[DeviceConfig]:
    # Entries look like: apc_bx = apc_back_ups_xs_1000m, APC Back-UPS XS
    devices: list[DeviceConfig] = []
    if parser.has_section("devices"):
        for wire_key, raw in parser.items("devices"):
            storage, _, friendly = raw.partition(",")
            devices.append(
                DeviceConfig(
                    wire_key=wire_key.strip(),
                    storage_identifier=storage.strip() or wire_key.strip(),
                    friendly_name=_get_optional(friendly),
                )
            )
    if not devices:
        devices.append(
            DeviceConfig(
                wire_key=default_device,
                storage_identifier=default_device,
                friendly_name=None,
            )
        )
    return devices


def load_config(path: str | Path) -> AppConfig:
    # Device keys are case sensitive.
    parser = configparser.ConfigParser()
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    read_files = parser.read(path)
    if not read_files:
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        mqtt = MqttConfig(
            host=parser.get("mqtt", "host", fallback="localhost"),
            port=parser.getint("mqtt", "port", fallback=1883),
            base_topic=parser.get("mqtt", "base_topic", fallback="ups_bridge"),
            discovery_topic=parser.get("mqtt", "discovery_topic", fallback="homeassistant"),
            client_id=parser.get("mqtt", "client_id", fallback="ups-bridge"),
            username=_get_optional(parser.get("mqtt", "username", fallback=None)),
            password=_get_optional(parser.get("mqtt", "password", fallback=None)),
            keepalive=parser.getint("mqtt", "keepalive", fallback=60),
            connect_timeout_s=parser.getfloat("mqtt", "connect_timeout_s", fallback=10.0),
            reconnect_min_s=parser.getint("mqtt", "reconnect_min_s", fallback=1),
            reconnect_max_s=parser.getint("mqtt", "reconnect_max_s", fallback=64),
            tls_enabled=parser.getboolean("mqtt", "tls", fallback=False),
            ca_cert=_get_optional(parser.get("mqtt", "ca_cert", fallback=None)),
        )

        device_id = parser.get("nut", "device_id", fallback="apc_ups")
        nut = NutConfig(
            host=parser.get("nut", "host", fallback="localhost"),
            port=parser.getint("nut", "port", fallback=3493),
            ups_name=parser.get("nut", "ups_name", fallback="ups"),
            device_id=device_id,
            device_name=parser.get("nut", "device_name", fallback="NUT UPS"),
            manufacturer=parser.get("nut", "manufacturer", fallback="Network UPS Tools"),
            model=parser.get("nut", "model", fallback="UPS"),
            upsc_path=parser.get("nut", "upsc_path", fallback="upsc"),
            timeout_s=parser.getfloat("nut", "timeout_s", fallback=10.0),
            poll_interval_s=parser.getint("nut", "poll_interval_s", fallback=60),
            max_backoff_s=parser.getint("nut", "max_backoff_s", fallback=60),
            nominal_power_w=parser.getfloat("nut", "nominal_power_w", fallback=600.0),
            enabled=parser.getboolean("nut", "enabled", fallback=True),
        )

        database = DatabaseConfig(
            url=_build_database_url(parser),
            max_retries=parser.getint("database", "max_retries", fallback=3),
            retry_delay_s=parser.getfloat("database", "retry_delay_s", fallback=1.0),
            reconnect_delay_s=parser.getfloat("database", "reconnect_delay_s", fallback=2.0),
        )

        collector = CollectorConfig(
            enabled=parser.getboolean("collector", "enabled", fallback=True),
            save_interval_s=parser.getint("collector", "save_interval_s", fallback=3600),
            tick_s=parser.getfloat("collector", "tick_s", fallback=1.0),
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid value in {path}: {exc}") from exc

    _require_positive("nut.poll_interval_s", nut.poll_interval_s)
    _require_positive("nut.max_backoff_s", nut.max_backoff_s)
    _require_positive("nut.nominal_power_w", nut.nominal_power_w)
    _require_positive("database.max_retries", database.max_retries)
    _require_positive("collector.save_interval_s", collector.save_interval_s)
    _require_positive("collector.tick_s", collector.tick_s)

    return AppConfig(
        mqtt=mqtt,
        nut=nut,
        database=database,
        collector=collector,
        devices=_parse_devices(parser, device_id),
    )

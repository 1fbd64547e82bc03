"""UPS telemetry bridge: NUT to MQTT with PostgreSQL history."""

from ups_bridge.aggregator import TelemetryAggregator
from ups_bridge.config import AppConfig, load_config
from ups_bridge.discovery import DiscoveryPublisher
from ups_bridge.mqtt_client import MqttBus, topic_matches
from ups_bridge.poller import SourcePoller
from ups_bridge.sample import Sample
from ups_bridge.store import StoreGateway

__all__ = [
    "AppConfig",
    "DiscoveryPublisher",
    "MqttBus",
    "Sample",
    "SourcePoller",
    "StoreGateway",
    "TelemetryAggregator",
    "load_config",
    "topic_matches",
]

from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
import time

from ups_bridge.aggregator import TelemetryAggregator
from ups_bridge.config import AppConfig, load_config
from ups_bridge.device_map import DeviceMap
from ups_bridge.discovery import DiscoveryPublisher
from ups_bridge.exceptions import ConfigError, ConnectivityError
from ups_bridge.logging_utils import configure_logging, resolve_log_level
from ups_bridge.mqtt_client import MqttBus
from ups_bridge.nut_client import NutClient
from ups_bridge.poller import SourcePoller, backoff_delay
from ups_bridge.status import collect_status
from ups_bridge.store import StoreGateway

# Time for queued QoS 1 messages to leave before a one-shot disconnect.
FLUSH_DELAY_S = 0.5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="NUT to MQTT bridge with PostgreSQL history")
    parser.add_argument(
        "--config",
        default="config/example.cfg",
        help="Path to CFG configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (TRACE, DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Poll the UPS and publish a single sample, then exit",
    )
    parser.add_argument(
        "--no-collector",
        action="store_true",
        help="Do not persist MQTT telemetry to the database",
    )
    parser.add_argument(
        "--no-bridge",
        action="store_true",
        help="Do not poll NUT (collector only)",
    )
    parser.add_argument(
        "--remove-discovery",
        action="store_true",
        help="Remove the UPS entities from Home Assistant and exit",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the service status as JSON on shutdown",
    )
    return parser


def build_poller(config: AppConfig, bus: MqttBus) -> SourcePoller:
    nut = config.nut
    discovery = DiscoveryPublisher(
        bus,
        device_id=nut.device_id,
        device_name=nut.device_name,
        root=config.mqtt.discovery_topic,
        manufacturer=nut.manufacturer,
        model=nut.model,
    )
    source = NutClient(
        nut.host,
        nut.port,
        nut.ups_name,
        upsc_path=nut.upsc_path,
        timeout_s=nut.timeout_s,
    )
    return SourcePoller(
        bus,
        source,
        discovery,
        device_id=nut.device_id,
        root=config.mqtt.discovery_topic,
        poll_interval_s=nut.poll_interval_s,
        max_backoff_s=nut.max_backoff_s,
        nominal_power_w=nut.nominal_power_w,
    )


def connect_with_backoff(bus: MqttBus, max_backoff_s: float, stop_event: threading.Event) -> bool:
    failures = 0
    while not stop_event.is_set():
        if bus.connect():
            return True
        failures += 1
        delay = backoff_delay(failures, max_backoff_s)
        logging.getLogger("ups_bridge").warning("Retrying MQTT connection in %.0fs", delay)
        stop_event.wait(delay)
    return False


def run_once(config: AppConfig, bus: MqttBus) -> bool:
    logger = logging.getLogger("ups_bridge")
    if not bus.connect():
        return False
    poller = build_poller(config, bus)
    try:
        if not poller.source.connect():
            return False
        try:
            published = poller.poll_and_publish()
        except ConnectivityError as exc:
            logger.error("NUT poll failed: %s", exc)
            return False
        time.sleep(FLUSH_DELAY_S)
        return published
    finally:
        poller.source.disconnect()
        bus.disconnect()


def remove_discovery(config: AppConfig, bus: MqttBus) -> bool:
    if not bus.connect():
        return False
    poller = build_poller(config, bus)
    try:
        removed = poller.discovery.remove_device()
        time.sleep(FLUSH_DELAY_S)
        return removed
    finally:
        bus.disconnect()


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    logger = logging.getLogger("ups_bridge")
    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc

    bus = MqttBus(config.mqtt)

    if args.remove_discovery:
        if not remove_discovery(config, bus):
            raise SystemExit(1)
        return

    if args.once:
        logger.info("Single-run mode enabled; exiting after one poll.")
        if not run_once(config, bus):
            raise SystemExit(1)
        return

    run_bridge = config.nut.enabled and not args.no_bridge
    run_collector = config.collector.enabled and not args.no_collector
    if not run_bridge and not run_collector:
        logger.error("Both the bridge and the collector are disabled; nothing to do.")
        raise SystemExit(1)

    stop_event = threading.Event()

    def request_stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    store: StoreGateway | None = None
    aggregator: TelemetryAggregator | None = None
    if run_collector:
        store = StoreGateway(
            max_retries=config.database.max_retries,
            retry_delay_s=config.database.retry_delay_s,
            reconnect_delay_s=config.database.reconnect_delay_s,
        )
        store.initialize(config.database.url)
        if not store.configured:
            raise SystemExit(1)
        aggregator = TelemetryAggregator(
            bus,
            store,
            DeviceMap(config.devices),
            root=config.mqtt.discovery_topic,
            save_interval_s=config.collector.save_interval_s,
            tick_s=config.collector.tick_s,
            nominal_power_w=config.nut.nominal_power_w,
        )
        # Registered before connecting; the bus subscribes on every connect.
        aggregator.setup_subscriptions()

    poller: SourcePoller | None = None
    if run_bridge:
        poller = build_poller(config, bus)
        poller.setup_subscriptions()

    if connect_with_backoff(bus, config.mqtt.reconnect_max_s, stop_event):
        if aggregator is not None:
            aggregator.start()
        if poller is not None:
            poller.start()
        logger.info(
            "UPS bridge started (bridge: %s, collector: %s).",
            "on" if run_bridge else "off",
            "on" if run_collector else "off",
        )
        while not stop_event.wait(1.0):
            pass

    status = collect_status(bus, store, poller, aggregator)
    logger.info("UPS bridge stopping.")
    if aggregator is not None:
        aggregator.stop()
    if poller is not None:
        poller.stop()
    bus.disconnect()
    if store is not None:
        store.close()
    if args.status:
        print(json.dumps(status.to_dict(), indent=2))
    logger.info("UPS bridge stopped.")


if __name__ == "__main__":
    main()

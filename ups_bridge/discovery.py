from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from ups_bridge.sample import FIELDS, FieldSpec, state_topic
from ups_bridge.schema import validate_discovery

DISCOVERY_QOS = 1


class Publisher(Protocol):
    availability_topic: str

    def publish(self, topic: str, payload: str, qos: int = 1, retain: bool = False) -> bool:
        ...


class DiscoveryPublisher:
    """Announce every UPS field as a Home Assistant entity.

    Each field gets one retained config message; an empty retained
    message on the same topic removes the entity again.
    """

    def __init__(
        self,
        publisher: Publisher,
        device_id: str,
        device_name: str,
        root: str = "homeassistant",
        manufacturer: str = "Network UPS Tools",
        model: str = "UPS",
        fields: tuple[FieldSpec, ...] = FIELDS,
    ) -> None:
        self.publisher = publisher
        self.device_id = device_id
        self.device_name = device_name
        self.root = root
        self.manufacturer = manufacturer
        self.model = model
        self.fields = fields
        self.logger = logging.getLogger(self.__class__.__name__)

    def config_topic(self, spec: FieldSpec) -> str:
        component = "binary_sensor" if spec.binary else "sensor"
        return f"{self.root}/{component}/{self.device_id}/{spec.name}/config"

    def config_topics(self) -> list[str]:
        return [self.config_topic(spec) for spec in self.fields]

    def build_device_info(self) -> dict[str, Any]:
        return {
            "identifiers": [self.device_id],
            "name": self.device_name,
            "manufacturer": self.manufacturer,
            "model": self.model,
        }

    def build_config(self, spec: FieldSpec) -> dict[str, Any]:
        config: dict[str, Any] = {
            "name": spec.label,
            "unique_id": f"{self.device_id}_{spec.name}",
            "state_topic": state_topic(self.root, self.device_id, spec.name),
            "availability_topic": self.publisher.availability_topic,
            "payload_available": "online",
            "payload_not_available": "offline",
            "device": self.build_device_info(),
        }
        if spec.binary:
            config["payload_on"] = "1"
            config["payload_off"] = "0"
        else:
            if spec.unit:
                config["unit_of_measurement"] = spec.unit
            if spec.state_class:
                config["state_class"] = spec.state_class
        if spec.device_class:
            config["device_class"] = spec.device_class
        if spec.icon:
            config["icon"] = spec.icon
        return config

    def publish_config(self, spec: FieldSpec) -> bool:
        config = self.build_config(spec)
        errors = validate_discovery(config)
        if errors:
            self.logger.warning(
                "Discovery config for %s failed schema validation with %s errors.",
                spec.name,
                len(errors),
            )
            self.logger.debug("Schema errors: %s", errors)
        return self.publisher.publish(
            self.config_topic(spec),
            json.dumps(config, separators=(",", ":")),
            qos=DISCOVERY_QOS,
            retain=True,
        )

    def publish_all(self) -> bool:
        self.logger.info("Publishing discovery configs for %s", self.device_name)
        all_success = True
        for spec in self.fields:
            if not self.publish_config(spec):
                all_success = False
        if all_success:
            self.logger.info("Published %s discovery configs", len(self.fields))
        else:
            self.logger.warning("Some discovery configs failed to publish")
        return all_success

    def remove_device(self) -> bool:
        self.logger.info("Removing %s from Home Assistant", self.device_name)
        all_success = True
        for topic in self.config_topics():
            if not self.publisher.publish(topic, "", qos=DISCOVERY_QOS, retain=True):
                all_success = False
        if not all_success:
            self.logger.warning("Some discovery removals failed to publish")
        return all_success

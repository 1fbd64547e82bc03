from __future__ import annotations

from collections.abc import Iterable
import logging

from ups_bridge.config import DeviceConfig


def default_friendly_name(wire_key: str) -> str:
    name = wire_key.replace("_", " ")
    return name[:1].upper() + name[1:]


class DeviceMap:
    """Read-only lookup between wire device keys and storage identifiers.

    Built once at startup and shared by the aggregator and the status
    report. Unknown keys map to themselves so a device that was never
    configured still gets a stable storage identifier.
    """

    def __init__(self, devices: Iterable[DeviceConfig]) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self._wire_to_storage: dict[str, str] = {}
        self._storage_to_wire: dict[str, str] = {}
        self._friendly_names: dict[str, str] = {}
        self._device_ids: list[str] = []
        for device in devices:
            if device.wire_key in self._wire_to_storage:
                self.logger.warning("Duplicate device key %s ignored", device.wire_key)
                continue
            self._device_ids.append(device.wire_key)
            self._wire_to_storage[device.wire_key] = device.storage_identifier
            self._storage_to_wire[device.storage_identifier] = device.wire_key
            if device.friendly_name:
                self._friendly_names[device.wire_key] = device.friendly_name
        for wire_key in self._device_ids:
            self.logger.info(
                "Device %s -> %s (%s)",
                wire_key,
                self.storage_identifier(wire_key),
                self.friendly_name(wire_key),
            )

    @property
    def device_ids(self) -> list[str]:
        return list(self._device_ids)

    def storage_identifier(self, wire_key: str) -> str:
        return self._wire_to_storage.get(wire_key, wire_key)

    def wire_key(self, storage_identifier: str) -> str:
        return self._storage_to_wire.get(storage_identifier, storage_identifier)

    def friendly_name(self, wire_key: str) -> str:
        return self._friendly_names.get(wire_key) or default_friendly_name(wire_key)

    def is_known(self, wire_key: str) -> bool:
        return wire_key in self._wire_to_storage

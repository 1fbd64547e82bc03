"""Tests for the device identifier map."""
from __future__ import annotations

from ups_bridge.config import DeviceConfig
from ups_bridge.device_map import DeviceMap, default_friendly_name


class TestDeviceMap:
    """Tests for DeviceMap lookups."""

    def test_mapped_device(self):
        devices = DeviceMap([DeviceConfig("apc_ups", "apc_back_ups_xs_1000m", "APC Back-UPS")])

        assert devices.storage_identifier("apc_ups") == "apc_back_ups_xs_1000m"
        assert devices.wire_key("apc_back_ups_xs_1000m") == "apc_ups"
        assert devices.friendly_name("apc_ups") == "APC Back-UPS"
        assert devices.is_known("apc_ups")

    def test_unknown_device_maps_to_itself(self):
        devices = DeviceMap([])

        assert devices.storage_identifier("garage_ups") == "garage_ups"
        assert devices.friendly_name("garage_ups") == "Garage ups"
        assert not devices.is_known("garage_ups")

    def test_duplicate_keys_keep_first(self):
        devices = DeviceMap(
            [
                DeviceConfig("apc_ups", "first", None),
                DeviceConfig("apc_ups", "second", None),
            ]
        )
        assert devices.device_ids == ["apc_ups"]
        assert devices.storage_identifier("apc_ups") == "first"

    def test_default_friendly_name(self):
        assert default_friendly_name("cyberpower_cp1500") == "Cyberpower cp1500"

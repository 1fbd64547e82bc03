"""UPS telemetry sample model.

A :class:`Sample` is one device's latest known snapshot: a sparse mapping
of field name to typed value. Which fields exist, how their text form is
parsed, which NUT variable feeds them, whether they are persisted and how
they are announced for discovery is all driven by the :data:`FIELDS` table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import math
from typing import Any, Mapping, Union

from ups_bridge.exceptions import ParseError, ValidationError
from ups_bridge.logging_utils import TRACE_LEVEL

logger = logging.getLogger(__name__)

FieldValue = Union[float, int, str, bool]

STATE_QOS = 1
DEFAULT_NOMINAL_POWER_W = 600.0
REQUIRED_FIELDS = ("battery_charge", "ups_status")
ON_BATTERY_FLAG = "OB"

_TRUE_VALUES = {"1", "true", "on", "yes"}
_FALSE_VALUES = {"0", "false", "off", "no"}


class FieldKind(Enum):
    FLOAT = "float"
    INT = "int"
    STRING = "string"
    BOOL = "bool"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind
    label: str
    nut_variable: str | None = None
    aliases: tuple[str, ...] = ()
    stored: bool = False
    unit: str | None = None
    device_class: str | None = None
    state_class: str | None = None
    icon: str | None = None
    binary: bool = False


FIELDS: tuple[FieldSpec, ...] = (
    # Battery
    FieldSpec("battery_charge", FieldKind.FLOAT, "Battery Charge", "battery.charge",
              stored=True, unit="%", device_class="battery", state_class="measurement"),
    FieldSpec("battery_voltage", FieldKind.FLOAT, "Battery Voltage", "battery.voltage",
              stored=True, unit="V", device_class="voltage", state_class="measurement"),
    FieldSpec("battery_runtime", FieldKind.INT, "Battery Runtime", "battery.runtime",
              stored=True, unit="s", device_class="duration", state_class="measurement",
              icon="mdi:timer-outline"),
    FieldSpec("battery_nominal_voltage", FieldKind.FLOAT, "Battery Nominal Voltage",
              "battery.voltage.nominal", aliases=("battery_voltage_nominal",),
              unit="V", device_class="voltage", state_class="measurement"),
    FieldSpec("battery_low_charge_threshold", FieldKind.FLOAT, "Battery Low Charge Threshold",
              "battery.charge.low", aliases=("battery_charge_low",), stored=True,
              unit="%", device_class="battery", state_class="measurement"),
    FieldSpec("battery_warning_charge_threshold", FieldKind.FLOAT,
              "Battery Warning Charge Threshold", "battery.charge.warning",
              aliases=("battery_charge_warning",), stored=True,
              unit="%", device_class="battery", state_class="measurement"),
    FieldSpec("battery_type", FieldKind.STRING, "Battery Type", "battery.type",
              icon="mdi:car-battery"),
    FieldSpec("battery_mfr_date", FieldKind.STRING, "Battery Manufacture Date",
              "battery.mfr.date", icon="mdi:calendar"),
    # Input
    FieldSpec("input_voltage", FieldKind.FLOAT, "Input Voltage", "input.voltage",
              stored=True, unit="V", device_class="voltage", state_class="measurement"),
    FieldSpec("input_nominal_voltage", FieldKind.INT, "Input Nominal Voltage",
              "input.voltage.nominal", aliases=("input_voltage_nominal",), stored=True,
              unit="V", device_class="voltage", state_class="measurement"),
    FieldSpec("high_voltage_transfer", FieldKind.FLOAT, "High Voltage Transfer",
              "input.transfer.high", aliases=("input_transfer_high",), stored=True,
              unit="V", device_class="voltage", state_class="measurement"),
    FieldSpec("low_voltage_transfer", FieldKind.FLOAT, "Low Voltage Transfer",
              "input.transfer.low", aliases=("input_transfer_low",), stored=True,
              unit="V", device_class="voltage", state_class="measurement"),
    FieldSpec("input_sensitivity", FieldKind.STRING, "Input Sensitivity",
              "input.sensitivity", stored=True, icon="mdi:tune"),
    FieldSpec("last_transfer_reason", FieldKind.STRING, "Last Transfer Reason",
              "input.transfer.reason", aliases=("input_transfer_reason",), stored=True,
              icon="mdi:information-outline"),
    # Load and status
    FieldSpec("load_percentage", FieldKind.FLOAT, "Load", "ups.load",
              aliases=("load_percent",), stored=True, unit="%",
              device_class="power_factor", state_class="measurement", icon="mdi:gauge"),
    FieldSpec("load_watts", FieldKind.FLOAT, "Load Power", stored=True, unit="W",
              device_class="power", state_class="measurement"),
    FieldSpec("ups_status", FieldKind.STRING, "UPS Status", "ups.status",
              aliases=("status",), stored=True, icon="mdi:information"),
    FieldSpec("power_failure", FieldKind.BOOL, "Power Failure", stored=True,
              device_class="power", icon="mdi:power-plug-off", binary=True),
    # UPS info
    FieldSpec("ups_nominal_power", FieldKind.FLOAT, "Nominal Power", "ups.realpower.nominal",
              unit="W", device_class="power", state_class="measurement"),
    FieldSpec("beeper_status", FieldKind.STRING, "Beeper Status", "ups.beeper.status",
              stored=True, icon="mdi:volume-high"),
    FieldSpec("self_test_result", FieldKind.STRING, "Self Test Result", "ups.test.result",
              stored=True, icon="mdi:clipboard-check"),
    FieldSpec("firmware_version", FieldKind.STRING, "Firmware Version", "ups.firmware",
              icon="mdi:chip"),
    FieldSpec("delay_shutdown", FieldKind.INT, "Shutdown Delay", "ups.delay.shutdown",
              unit="s", device_class="duration", icon="mdi:timer-cog-outline"),
    FieldSpec("timer_reboot", FieldKind.INT, "Reboot Timer", "ups.timer.reboot",
              unit="s", device_class="duration", icon="mdi:timer-refresh-outline"),
    FieldSpec("timer_shutdown", FieldKind.INT, "Shutdown Timer", "ups.timer.shutdown",
              unit="s", device_class="duration", icon="mdi:timer-off-outline"),
    # Driver
    FieldSpec("driver_name", FieldKind.STRING, "Driver Name", "driver.name",
              icon="mdi:application"),
    FieldSpec("driver_version", FieldKind.STRING, "Driver Version", "driver.version",
              icon="mdi:tag"),
    FieldSpec("driver_state", FieldKind.STRING, "Driver State", "driver.state",
              stored=True, icon="mdi:state-machine"),
    # Environment and output
    FieldSpec("temperature", FieldKind.FLOAT, "Temperature", "ups.temperature",
              stored=True, unit="°C", device_class="temperature", state_class="measurement"),
    FieldSpec("output_voltage", FieldKind.FLOAT, "Output Voltage", "output.voltage",
              stored=True, unit="V", device_class="voltage", state_class="measurement"),
    FieldSpec("output_nominal_voltage", FieldKind.INT, "Output Nominal Voltage",
              "output.voltage.nominal", stored=True, unit="V", device_class="voltage",
              state_class="measurement"),
)

FIELDS_BY_NAME: dict[str, FieldSpec] = {spec.name: spec for spec in FIELDS}
STORED_FIELDS: tuple[str, ...] = tuple(spec.name for spec in FIELDS if spec.stored)

_WIRE_NAMES: dict[str, FieldSpec] = {}
for _spec in FIELDS:
    _WIRE_NAMES[_spec.name] = _spec
    for _alias in _spec.aliases:
        _WIRE_NAMES[_alias] = _spec


def lookup_field(wire_name: str) -> FieldSpec | None:
    """Return the field for a canonical name or a known publisher alias."""
    return _WIRE_NAMES.get(wire_name)


def parse_value(spec: FieldSpec, text: str) -> FieldValue:
    value = text.strip()
    if not value:
        raise ParseError(spec.name, text)
    if spec.kind is FieldKind.STRING:
        return value
    if spec.kind is FieldKind.BOOL:
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ParseError(spec.name, text)
    try:
        number = float(value)
    except ValueError as exc:
        raise ParseError(spec.name, text) from exc
    if not math.isfinite(number):
        raise ParseError(spec.name, text)
    if spec.kind is FieldKind.INT:
        # Some publishers render integers as "120.000000".
        if not number.is_integer():
            raise ParseError(spec.name, text)
        return int(number)
    return number


def render_value(spec: FieldSpec, value: FieldValue) -> str:
    if spec.kind is FieldKind.BOOL:
        return "1" if value else "0"
    return str(value)


def state_topic(root: str, device_key: str, field_name: str) -> str:
    return f"{root}/sensor/{device_key}/{field_name}/state"


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WireMessage:
    topic: str
    payload: str
    qos: int = STATE_QOS
    retain: bool = False


@dataclass
class Sample:
    device_key: str
    timestamp: datetime = field(default_factory=_utcnow)
    fields: dict[str, FieldValue] = field(default_factory=dict)

    @classmethod
    def from_nut_variables(
        cls,
        device_key: str,
        variables: Mapping[str, str],
        nominal_power_w: float = DEFAULT_NOMINAL_POWER_W,
    ) -> Sample:
        """Build a fully populated sample from one ``upsc`` variable dump."""
        sample = cls(device_key=device_key)
        for spec in FIELDS:
            if spec.nut_variable is None:
                continue
            raw = variables.get(spec.nut_variable)
            if not raw:
                continue
            try:
                sample.fields[spec.name] = parse_value(spec, raw)
            except ParseError as exc:
                logger.debug("%s: %s", device_key, exc)
        sample._derive_power_failure()
        sample._derive_load_watts(nominal_power_w)
        return sample

    def get(self, name: str) -> FieldValue | None:
        return self.fields.get(name)

    def update_field(
        self,
        wire_name: str,
        text: str,
        nominal_power_w: float = DEFAULT_NOMINAL_POWER_W,
    ) -> bool:
        """Merge one wire update into the sample.

        Returns True when a field was set. Unknown names and unparsable
        values leave every field untouched.
        """
        self.timestamp = _utcnow()
        spec = lookup_field(wire_name)
        if spec is None:
            logger.log(TRACE_LEVEL, "%s: ignoring unknown field %s", self.device_key, wire_name)
            return False
        try:
            value = parse_value(spec, text)
        except ParseError as exc:
            logger.debug("%s: %s", self.device_key, exc)
            return False
        self.fields[spec.name] = value
        if spec.name == "ups_status":
            self._derive_power_failure()
        elif spec.name == "load_percentage":
            self._derive_load_watts(nominal_power_w)
        return True

    def _derive_power_failure(self) -> None:
        status = self.fields.get("ups_status")
        if isinstance(status, str):
            self.fields["power_failure"] = ON_BATTERY_FLAG in status.split()

    def _derive_load_watts(self, nominal_power_w: float) -> None:
        load = self.fields.get("load_percentage")
        if not isinstance(load, float):
            return
        nominal = self.fields.get("ups_nominal_power")
        if not isinstance(nominal, float) or nominal <= 0:
            nominal = nominal_power_w
        self.fields["load_watts"] = load / 100.0 * nominal

    def missing_required(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if name not in self.fields]

    def is_valid(self) -> bool:
        return not self.missing_required()

    def validate(self) -> None:
        missing = self.missing_required()
        if missing:
            raise ValidationError(
                f"Sample for {self.device_key} is missing {', '.join(missing)}",
                missing=missing,
            )

    def copy(self) -> Sample:
        return Sample(device_key=self.device_key, timestamp=self.timestamp, fields=dict(self.fields))

    def stored_values(self) -> dict[str, FieldValue | None]:
        return {name: self.fields.get(name) for name in STORED_FIELDS}

    def to_messages(self, root: str) -> list[WireMessage]:
        messages = []
        for spec in FIELDS:
            value = self.fields.get(spec.name)
            if value is None:
                continue
            messages.append(
                WireMessage(
                    topic=state_topic(root, self.device_key, spec.name),
                    payload=render_value(spec, value),
                )
            )
        return messages

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "device_id": self.device_key,
            "timestamp": format_timestamp(self.timestamp),
        }
        for spec in FIELDS:
            if spec.name in self.fields:
                payload[spec.name] = self.fields[spec.name]
        return payload

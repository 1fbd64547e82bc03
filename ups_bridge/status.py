"""Point-in-time health snapshot consumed by the CLI and any HTTP surface."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol


class _Connectable(Protocol):
    def is_connected(self) -> bool:
        ...


@dataclass(frozen=True)
class ServiceStatus:
    mqtt_connected: bool
    database_connected: bool
    bridge_running: bool
    last_poll_time: datetime | None
    collector_running: bool
    last_save_time: datetime | None
    device_count: int

    @property
    def healthy(self) -> bool:
        # A disabled component neither helps nor hurts the verdict.
        return self.mqtt_connected and (self.database_connected or not self.collector_running)

    @property
    def verdict(self) -> str:
        return "healthy" if self.healthy else "degraded"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("last_poll_time", "last_save_time"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        data["status"] = self.verdict
        return data


def collect_status(
    bus: _Connectable | None,
    store: _Connectable | None = None,
    poller: Any | None = None,
    aggregator: Any | None = None,
) -> ServiceStatus:
    return ServiceStatus(
        mqtt_connected=bus.is_connected() if bus is not None else False,
        database_connected=store.is_connected() if store is not None else False,
        bridge_running=poller.is_running() if poller is not None else False,
        last_poll_time=poller.last_poll_time if poller is not None else None,
        collector_running=aggregator.is_running() if aggregator is not None else False,
        last_save_time=aggregator.last_save_time if aggregator is not None else None,
        device_count=aggregator.device_count() if aggregator is not None else 0,
    )

"""
Record types shared by the watchdog, the state store and the HTTP layer.

Records are replaced whole on every store write; never mutate one that
was handed out by the store.
"""

from __future__ import annotations

import dataclasses
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from .config import DEFAULT_PINNED_ID

LOG_LEVELS = ("INFO", "WARN", "ERROR", "DEBUG", "CONN")


class ServiceState(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Phase(str, enum.Enum):
    UNPROVISIONED = "UNPROVISIONED"
    PROVISIONING = "PROVISIONING"
    RECONCILING = "RECONCILING"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


def record_to_dict(record: Any) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    return {k: _jsonable(v) for k, v in dataclasses.asdict(record).items()}


@dataclasses.dataclass(frozen=True)
class RemoteConfig:
    unique_base_station_id: str = DEFAULT_PINNED_ID
    base_station_name: str = "mioty BS"
    base_station_vendor: str = "Miromico"
    base_station_model: str = "EDGE-GW-MY-868"
    service_center_addr: str = "localhost"
    # an unparsable remote value is kept as its raw text
    service_center_port: Union[int, str] = 8080
    profile: str = "EU1"
    tls_auth_required: bool = False
    tls_allow_insecure: bool = False
    updated_at: Optional[datetime] = None


@dataclasses.dataclass(frozen=True)
class BaseStationStatus:
    status: str = "stopped"  # running|stopped|error
    service_active: bool = False
    auto_start: bool = False
    uptime: str = "unknown"
    memory_usage: str = "unknown"
    last_started: Optional[datetime] = None
    last_stopped: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclasses.dataclass(frozen=True)
class Connection:
    name: str = "mioty"
    interface: str = ""
    external_interface: str = ""
    status: str = "disconnected"  # connected|disconnected|pending
    ip_address: str = "172.30.1.1"
    edge_card_ip: Optional[str] = None
    auto_connect: bool = False
    updated_at: Optional[datetime] = None


@dataclasses.dataclass(frozen=True)
class SystemInfo:
    cli_version: str = ""
    edge_card_model: str = "EDGE-GW-MY-868"
    firmware_version: str = "unknown"
    kernel_version: str = "unknown"
    hostname: str = ""
    last_sync: Optional[datetime] = None


@dataclasses.dataclass(frozen=True)
class ActivityLogEntry:
    level: str
    message: str
    source: str = "system"
    timestamp: datetime = dataclasses.field(default_factory=utcnow)
    id: str = dataclasses.field(default_factory=lambda: uuid.uuid4().hex)


@dataclasses.dataclass(frozen=True)
class RemoteSnapshot:
    """One-shot system probe of the EdgeCard, see extractor.parse_remote_snapshot."""

    hostname: str = ""
    uptime: str = "unknown"
    memory_usage: str = "unknown"
    model: str = "EDGE-GW-MY-868"
    firmware_version: str = "unknown"
    kernel_version: str = "unknown"
    auto_start: bool = False
    legacy: Dict[str, Any] = dataclasses.field(default_factory=dict)

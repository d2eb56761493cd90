"""
In-memory state store read by the HTTP layer and written by the watchdog.

Each record has its own lock. A write replaces the record whole, so a
reader sees either the previous or the next record, never a mix. The
unique-id pin and the activity-log cap are applied inside the same
critical section as the write they belong to.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from .config import DEFAULT_LOG_LIMIT, DEFAULT_PINNED_ID, LOG_CAPACITY
from .models import (
    LOG_LEVELS,
    ActivityLogEntry,
    BaseStationStatus,
    Connection,
    RemoteConfig,
    SystemInfo,
    record_to_dict,
    utcnow,
)

log = logging.getLogger(__name__)

_PY_LEVELS = {
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "DEBUG": logging.DEBUG,
    "CONN": logging.INFO,
}


class StateStore:
    def __init__(
        self,
        *,
        pinned_id: str = DEFAULT_PINNED_ID,
        log_capacity: int = LOG_CAPACITY,
        connection: Optional[Connection] = None,
        cli_version: str = "",
    ) -> None:
        self.pinned_id = pinned_id
        self._connection_lock = threading.Lock()
        self._config_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._system_lock = threading.Lock()
        self._log_lock = threading.Lock()

        self._connection = connection or Connection()
        self._config = RemoteConfig(unique_base_station_id=pinned_id, updated_at=utcnow())
        self._status = BaseStationStatus(updated_at=utcnow())
        self._system = SystemInfo(cli_version=cli_version)
        self._logs: Deque[ActivityLogEntry] = deque(maxlen=log_capacity)

    # --- Connection

    def get_connection(self) -> Connection:
        with self._connection_lock:
            return self._connection

    def update_connection(self, **changes: Any) -> Connection:
        with self._connection_lock:
            self._connection = dataclasses.replace(self._connection, updated_at=utcnow(), **changes)
            return self._connection

    # --- Base station config

    def get_config(self) -> RemoteConfig:
        with self._config_lock:
            return self._config

    def set_config(self, config: RemoteConfig) -> RemoteConfig:
        """Replace the stored config; the unique id is always forced to the pinned value."""
        with self._config_lock:
            self._config = dataclasses.replace(
                config,
                unique_base_station_id=self.pinned_id,
                updated_at=utcnow(),
            )
            return self._config

    def update_config(self, **changes: Any) -> RemoteConfig:
        changes["unique_base_station_id"] = self.pinned_id
        changes["updated_at"] = utcnow()
        with self._config_lock:
            self._config = dataclasses.replace(self._config, **changes)
            return self._config

    # --- Base station status

    def get_status(self) -> BaseStationStatus:
        with self._status_lock:
            return self._status

    def update_status(self, **changes: Any) -> BaseStationStatus:
        with self._status_lock:
            self._status = dataclasses.replace(self._status, updated_at=utcnow(), **changes)
            return self._status

    # --- System info

    def get_system_info(self) -> SystemInfo:
        with self._system_lock:
            return self._system

    def update_system_info(self, **changes: Any) -> SystemInfo:
        with self._system_lock:
            self._system = dataclasses.replace(self._system, **changes)
            return self._system

    # --- Activity log

    def add_log(self, level: str, message: str, source: str = "system") -> ActivityLogEntry:
        level = level.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {level!r}")
        entry = ActivityLogEntry(level=level, message=message, source=source)
        with self._log_lock:
            self._logs.appendleft(entry)
        log.log(_PY_LEVELS[level], "[%s] %s", source, message)
        return entry

    def get_logs(self, limit: Optional[int] = DEFAULT_LOG_LIMIT) -> List[ActivityLogEntry]:
        """Newest first."""
        with self._log_lock:
            entries = list(self._logs)
        if limit is None:
            return entries
        return entries[: max(0, limit)]

    def clear_logs(self) -> None:
        with self._log_lock:
            self._logs.clear()

    # --- Snapshot

    def snapshot(self, *, log_limit: int = DEFAULT_LOG_LIMIT) -> Dict[str, Any]:
        return {
            "connection": record_to_dict(self.get_connection()),
            "config": record_to_dict(self.get_config()),
            "status": record_to_dict(self.get_status()),
            "system": record_to_dict(self.get_system_info()),
            "logs": [record_to_dict(e) for e in self.get_logs(log_limit)],
        }

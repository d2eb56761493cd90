"""Remote control of the base-station unit on the EdgeCard."""

from __future__ import annotations

import logging
import shlex
from typing import Awaitable, Protocol

from .models import ServiceState
from .transport import RemoteFault

log = logging.getLogger(__name__)


class Executor(Protocol):
    def execute(self, address: str, command: str) -> Awaitable[str]: ...


class ServiceController:
    def __init__(self, executor: Executor, service_name: str = "mioty_bs") -> None:
        self._executor = executor
        self.service_name = service_name

    def _systemctl(self, verb: str) -> str:
        return f"systemctl {verb} {shlex.quote(self.service_name)}"

    async def status(self, address: str) -> ServiceState:
        """Never raises: systemctl first, then a process-table grep, else inactive."""
        try:
            out = await self._executor.execute(address, self._systemctl("is-active"))
            return ServiceState.ACTIVE if out.strip() == "active" else ServiceState.INACTIVE
        except RemoteFault as exc:
            log.debug("systemctl is-active %s failed on %s: %s", self.service_name, address, exc)

        # BusyBox images ship without systemd
        name = shlex.quote(self.service_name)
        try:
            await self._executor.execute(address, f"ps | grep {name} | grep -v grep")
            return ServiceState.ACTIVE
        except RemoteFault as exc:
            log.debug("process grep for %s failed on %s: %s", self.service_name, address, exc)
        return ServiceState.INACTIVE

    async def is_enabled(self, address: str) -> bool:
        try:
            out = await self._executor.execute(address, self._systemctl("is-enabled"))
        except RemoteFault:
            return False
        return out.strip() == "enabled"

    async def start(self, address: str) -> None:
        await self._executor.execute(address, self._systemctl("start"))

    async def stop(self, address: str) -> None:
        await self._executor.execute(address, self._systemctl("stop"))

    async def restart(self, address: str) -> None:
        await self._executor.execute(address, self._systemctl("restart"))

    async def enable(self, address: str) -> None:
        await self._executor.execute(address, self._systemctl("enable"))

    async def disable(self, address: str) -> None:
        await self._executor.execute(address, self._systemctl("disable"))

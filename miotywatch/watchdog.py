"""
EdgeCard discovery and reconciliation loop.

Two interval jobs share one asyncio loop:

  discovery   find the card (probe candidates in order), then run the
              one-time provisioning sequence until it has succeeded once
  reconcile   pull the card's config and status into the store and restart
              the base-station service when it is down

Neither job ever raises out of its tick; every failure becomes an
activity-log line and the next tick tries again at the same interval.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import Settings
from .extractor import extract_config, parse_remote_snapshot, snapshot_command
from .models import Phase, RemoteSnapshot, ServiceState, utcnow
from .provisioner import HostProvisioner, ProvisionFailed
from .service import ServiceController
from .store import StateStore
from .transport import CommandFailed, RemoteFault, RemoteTimeout, TransferFailed, TransportError

log = logging.getLogger(__name__)

PROBE_COMMAND = "true"


class NotConnected(Exception):
    """Raised by manual actions while no EdgeCard is bound."""


class Executor(Protocol):
    def execute(self, address: str, command: str) -> Awaitable[str]: ...


class Fetcher(Protocol):
    def fetch(self, address: str, remote_path: str) -> Awaitable[bytes]: ...


@dataclasses.dataclass
class WatchdogState:
    phase: Phase = Phase.UNPROVISIONED
    address: Optional[str] = None
    provisioned: bool = False
    discovery_runs: int = 0
    reconcile_runs: int = 0
    last_error: str = ""


class Watchdog:
    def __init__(
        self,
        store: StateStore,
        executor: Executor,
        fetcher: Fetcher,
        provisioner: HostProvisioner,
        services: ServiceController,
        settings: Settings,
        *,
        provision_host: bool = True,
        state: Optional[WatchdogState] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.fetcher = fetcher
        self.provisioner = provisioner
        self.services = services
        self.settings = settings
        self.provision_host = provision_host
        self.state = state or WatchdogState()
        self._scheduler: Optional[AsyncIOScheduler] = None

    def _log(self, level: str, message: str, source: str = "watchdog") -> None:
        self.store.add_log(level, message, source)

    def describe(self) -> Dict[str, Any]:
        st = self.state
        return {
            "phase": st.phase.value,
            "address": st.address,
            "provisioned": st.provisioned,
            "discovery_runs": st.discovery_runs,
            "reconcile_runs": st.reconcile_runs,
            "last_error": st.last_error,
        }

    # --- Discovery

    def needs_discovery(self) -> bool:
        return self.state.address is None or self.store.get_connection().status != "connected"

    async def discover(self) -> Optional[str]:
        """Bind to the first candidate that answers a trivial ssh command."""
        self.state.phase = Phase.UNPROVISIONED
        self.state.address = None
        self.store.update_connection(status="pending")
        for address in self.settings.edge_candidates:
            try:
                await self.executor.execute(address, PROBE_COMMAND)
            except RemoteFault as exc:
                self._log("DEBUG", f"No EdgeCard at {address}: {exc}", "connection")
                continue
            self.state.address = address
            self.store.update_connection(status="connected", edge_card_ip=address)
            self._log("CONN", f"Connection established to EdgeCard at {address}", "connection")
            return address

        self.store.update_connection(status="disconnected", edge_card_ip=None)
        self._log(
            "WARN",
            "No EdgeCard answered on " + ", ".join(self.settings.edge_candidates),
            "connection",
        )
        return None

    def _lose_link(self, address: str, exc: BaseException) -> None:
        self.state.address = None
        self.state.phase = Phase.UNPROVISIONED
        self.state.last_error = str(exc)
        self.store.update_connection(status="disconnected", edge_card_ip=None)
        self._log("ERROR", f"Lost EdgeCard at {address}: {exc}", "connection")

    # --- Provisioning

    async def _provision_host_network(self) -> None:
        result = await self.provisioner.provision()
        self.store.update_connection(
            interface=result.interface,
            external_interface=result.external_interface,
        )

    async def _enable_autoconnect(self) -> None:
        await self.provisioner.enable_autoconnect()
        self.store.update_connection(auto_connect=True)

    def _provisioning_steps(self, address: str) -> List[Tuple[str, Callable[[], Awaitable[Any]]]]:
        steps: List[Tuple[str, Callable[[], Awaitable[Any]]]] = []
        if self.provision_host:
            steps += [
                ("host network setup", self._provision_host_network),
                ("start connection", self.provisioner.connection_up),
                ("enable auto-connect", self._enable_autoconnect),
            ]
        steps += [
            ("enable remote service", lambda: self.services.enable(address)),
            ("start remote service", lambda: self.services.start(address)),
        ]
        return steps

    async def provision(self) -> bool:
        """One pass of the provisioning sequence. True only when every step succeeded."""
        if self.state.provisioned:
            return True
        address = self.state.address
        if address is None:
            return False

        self.state.phase = Phase.PROVISIONING
        ok = True
        for name, action in self._provisioning_steps(address):
            self._log("INFO", f"START {name}", "provisioning")
            try:
                await action()
            except (RemoteFault, ProvisionFailed) as exc:
                ok = False
                self.state.last_error = str(exc)
                self._log("ERROR", f"ERROR {name}: {exc}", "provisioning")
                continue
            self._log("INFO", f"SUCCESS {name}", "provisioning")

        self.state.phase = Phase.RECONCILING
        if not ok:
            self._log("WARN", "Provisioning incomplete; retrying on the next discovery tick", "provisioning")
            return False
        self.state.provisioned = True
        self.store.update_status(auto_start=True)
        self._log("INFO", "Provisioning completed", "provisioning")
        return True

    # --- Reconciliation

    async def _fetch_snapshot(self, address: str) -> RemoteSnapshot:
        command = snapshot_command(self.settings.service_name, self.settings.legacy_config_path)
        try:
            return parse_remote_snapshot(await self.executor.execute(address, command))
        except CommandFailed as exc:
            self._log("ERROR", f"System probe failed on {address}: {exc}", "system")
            return RemoteSnapshot()

    async def _fetch_config_xml(self, address: str) -> Optional[bytes]:
        try:
            return await self.fetcher.fetch(address, self.settings.remote_config_path)
        except TransferFailed as exc:
            self._log(
                "ERROR",
                f"Could not fetch {self.settings.remote_config_path}: {exc}; using defaults",
                "config",
            )
            return None

    async def _ensure_service(self, address: str) -> Dict[str, Any]:
        name = self.settings.service_name
        state = await self.services.status(address)
        if state is ServiceState.ACTIVE:
            return {"status": "running", "service_active": True}

        now = utcnow()
        changes: Dict[str, Any] = {"service_active": False}
        if self.store.get_status().status == "running":
            changes["last_stopped"] = now
        self._log("WARN", f"{name} is not running on {address}; restarting", "base-station")
        try:
            await self.services.start(address)
        except TransportError:
            raise
        except RemoteFault as exc:
            self._log("ERROR", f"Failed to restart {name}: {exc}", "base-station")
            changes["status"] = "error"
            return changes
        self._log("INFO", f"{name} restarted successfully", "base-station")
        changes.update(status="running", service_active=True, last_started=now)
        return changes

    async def reconcile(self) -> bool:
        """One reconciliation cycle against the bound card. False when skipped or aborted."""
        address = self.state.address
        if address is None:
            return False
        try:
            snapshot = await self._fetch_snapshot(address)
            xml_bytes = await self._fetch_config_xml(address)
            config = self.store.set_config(extract_config(xml_bytes, snapshot.legacy))
            status_changes = await self._ensure_service(address)
        except TransportError as exc:
            self._lose_link(address, exc)
            return False
        except RemoteTimeout as exc:
            self.state.last_error = str(exc)
            self._log("ERROR", f"Reconciliation timed out on {address}: {exc}", "system")
            return False

        self.store.update_status(
            auto_start=snapshot.auto_start,
            uptime=snapshot.uptime,
            memory_usage=snapshot.memory_usage,
            **status_changes,
        )
        self.store.update_system_info(
            edge_card_model=snapshot.model,
            firmware_version=snapshot.firmware_version,
            kernel_version=snapshot.kernel_version,
            hostname=snapshot.hostname,
            last_sync=utcnow(),
        )
        if self.state.provisioned:
            self.state.phase = Phase.RECONCILING
        self.state.reconcile_runs += 1
        self._log("DEBUG", f"Reconciled {config.base_station_name} ({config.profile}) from {address}", "system")
        return True

    # --- Ticks

    async def discovery_tick(self) -> None:
        self.state.discovery_runs += 1
        try:
            if self.needs_discovery() and await self.discover() is None:
                return
            if not self.state.provisioned:
                await self.provision()
        except Exception as exc:  # the loop must outlive any single failure
            log.exception("Discovery tick failed")
            self.state.last_error = f"{type(exc).__name__}: {exc}"
            self._log("ERROR", f"Discovery cycle failed: {type(exc).__name__}: {exc}")

    async def reconcile_tick(self) -> None:
        try:
            await self.reconcile()
        except Exception as exc:
            log.exception("Reconcile tick failed")
            self.state.last_error = f"{type(exc).__name__}: {exc}"
            self._log("ERROR", f"Reconciliation cycle failed: {type(exc).__name__}: {exc}")

    # --- Manual actions (HTTP layer)

    def _require_address(self) -> str:
        address = self.state.address
        if address is None or self.store.get_connection().status != "connected":
            raise NotConnected("EdgeCard is not connected")
        return address

    async def start_service(self) -> None:
        address = self._require_address()
        await self.services.start(address)
        self.store.update_status(status="running", service_active=True, last_started=utcnow())
        self._log("INFO", "Base station started", "base-station")

    async def stop_service(self) -> None:
        address = self._require_address()
        await self.services.stop(address)
        self.store.update_status(status="stopped", service_active=False, last_stopped=utcnow())
        self._log("INFO", "Base station stopped", "base-station")

    async def restart_service(self) -> None:
        address = self._require_address()
        self._log("INFO", "Restarting base station...", "base-station")
        await self.services.restart(address)
        self.store.update_status(status="running", service_active=True, last_started=utcnow())
        self._log("INFO", "Base station restarted successfully", "base-station")

    async def toggle_autostart(self) -> bool:
        address = self._require_address()
        enabled = not self.store.get_status().auto_start
        if enabled:
            await self.services.enable(address)
        else:
            await self.services.disable(address)
        self.store.update_status(auto_start=enabled)
        self._log("INFO", f"Base station auto-start {'enabled' if enabled else 'disabled'}", "base-station")
        return enabled

    # --- Scheduling

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        s = self.settings
        now = datetime.now(timezone.utc)
        scheduler = AsyncIOScheduler(event_loop=loop, timezone="UTC")
        scheduler.add_job(
            self.discovery_tick,
            "interval",
            seconds=s.discovery_interval_s,
            id="discovery",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=now,
        )
        scheduler.add_job(
            self.reconcile_tick,
            "interval",
            seconds=s.reconcile_interval_s,
            id="reconcile",
            replace_existing=True,
            max_instances=s.reconcile_max_instances,
            coalesce=True,
            next_run_time=now + timedelta(seconds=s.reconcile_offset_s),
        )
        scheduler.start()
        self._scheduler = scheduler
        log.info(
            "Watchdog scheduled: discovery every %.0fs, reconcile every %.0fs (+%.0fs)",
            s.discovery_interval_s,
            s.reconcile_interval_s,
            s.reconcile_offset_s,
        )

    def shutdown(self) -> None:
        """Stop both jobs. In-flight ssh and sftp sessions run on until their own timeout."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None


class WatchdogRunner:
    """Hosts the watchdog's event loop on its own thread next to the HTTP server."""

    def __init__(self, watchdog: Watchdog) -> None:
        self.watchdog = watchdog
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="watchdog-loop", daemon=True)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> None:
        self._thread.start()
        self.watchdog.start(self.loop)

    def submit(self, coro: Awaitable[Any], timeout_s: float) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)  # type: ignore[arg-type]
        return future.result(timeout=timeout_s)

    def stop(self) -> None:
        self.watchdog.shutdown()
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5.0)

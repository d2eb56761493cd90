"""
Host-side network provisioning for the EdgeCard link.

Creates (once) and configures (always) the NetworkManager profile for the
cable to the card, and installs a dispatcher hook that NATs the card's
traffic out through the host's uplink. Every step is safe to repeat: the
profile is only added when missing, `nmcli modify` is declarative, and the
dispatcher script skips rule insertion when rules carrying the tag comment
already exist.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import shlex
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

import psutil

from .config import Settings
from .transport import RemoteFault

log = logging.getLogger(__name__)

SOURCE = "provisioning"

USB_ETHERNET = re.compile(r"^(enx[0-9a-f]{12}|usb\d+)$")
GENERIC_ETHERNET = re.compile(r"^(eth\d+|en[ops]\w+)$")

DISPATCHER_TEMPLATE = """#!/bin/sh
# Installed by miotywatch: NAT for the mioty EdgeCard link on {iface}.
IFACE="$1"
ACTION="$2"

[ "$IFACE" = {iface_q} ] || exit 0
case "$ACTION" in
    up|dhcp4-change|connectivity-change) ;;
    *) exit 0 ;;
esac

sysctl -w net.ipv4.ip_forward=1 >/dev/null

# rules tagged with {tag} are already in place
if iptables-save 2>/dev/null | grep -q -- {tag_q}; then
    exit 0
fi

iptables -I FORWARD -i {iface_q} -o {ext_q} -m comment --comment {tag_q} -j ACCEPT
iptables -I FORWARD -i {ext_q} -o {iface_q} -m conntrack --ctstate RELATED,ESTABLISHED \\
    -m comment --comment {tag_q} -j ACCEPT
iptables -t nat -A PREROUTING -i {iface_q} -p udp --dport 53 \\
    -m comment --comment {tag_q} -j DNAT --to-destination {dns}:53
iptables -t nat -A PREROUTING -i {iface_q} -p tcp --dport 53 \\
    -m comment --comment {tag_q} -j DNAT --to-destination {dns}:53
iptables -t nat -A POSTROUTING -o {ext_q} -m comment --comment {tag_q} -j MASQUERADE
exit 0
"""


class ProvisionFailed(Exception):
    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"provisioning step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class Runner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        privileged: bool = False,
        input_text: Optional[str] = None,
    ) -> Awaitable[str]: ...


LogFn = Callable[[str, str, str], object]


@dataclasses.dataclass
class ProvisionResult:
    interface: str
    external_interface: str


def _is_loopback(name: str) -> bool:
    return name == "lo" or name.startswith("lo:")


def render_dispatcher_script(interface: str, external_interface: str, tag: str, dns_server: str) -> str:
    return DISPATCHER_TEMPLATE.format(
        iface=interface,
        iface_q=shlex.quote(interface),
        ext_q=shlex.quote(external_interface),
        tag=tag,
        tag_q=shlex.quote(tag),
        dns=dns_server,
    )


class HostProvisioner:
    def __init__(
        self,
        runner: Runner,
        settings: Settings,
        *,
        on_log: Optional[LogFn] = None,
        net_if_stats: Callable[[], Dict[str, object]] = psutil.net_if_stats,
    ) -> None:
        self._runner = runner
        self._settings = settings
        self._on_log = on_log
        self._net_if_stats = net_if_stats

    def _log(self, level: str, message: str) -> None:
        if self._on_log is not None:
            self._on_log(level, message, SOURCE)
        else:
            log.info("%s %s", level, message)

    # --- Interface detection

    def detect_interface(self, exclude: Iterable[str] = ()) -> str:
        """Pick the interface facing the EdgeCard. Falls back, never raises."""
        excluded = set(exclude)
        try:
            stats = self._net_if_stats()
        except (OSError, RuntimeError) as exc:
            log.warning("Interface enumeration failed: %s", exc)
            stats = {}

        names: List[str] = [n for n in stats if not _is_loopback(n)]
        candidates = [n for n in names if n not in excluded]

        for name in candidates:
            if USB_ETHERNET.match(name):
                return name
        for name in candidates:
            if GENERIC_ETHERNET.match(name):
                return name
        for name in candidates:
            if getattr(stats[name], "isup", False):
                return name
        if candidates:
            return candidates[0]
        return self._settings.fallback_interface

    async def detect_external_interface(self) -> str:
        try:
            out = await self._runner.run(["ip", "route", "show", "default"])
        except RemoteFault as exc:
            log.warning("Default route lookup failed: %s", exc)
            return self._settings.fallback_external_interface
        for line in out.splitlines():
            tokens = line.split()
            if "dev" in tokens:
                idx = tokens.index("dev")
                if idx + 1 < len(tokens):
                    return tokens[idx + 1]
        return self._settings.fallback_external_interface

    # --- NetworkManager profile

    async def profile_exists(self) -> bool:
        out = await self._runner.run(["nmcli", "-t", "-f", "NAME", "connection", "show"])
        return self._settings.profile_name in (line.strip() for line in out.splitlines())

    async def create_profile(self, interface: str) -> bool:
        """Add the profile if it is missing. Returns True when it was created."""
        if await self.profile_exists():
            return False
        await self._runner.run(
            [
                "nmcli", "connection", "add",
                "type", "ethernet",
                "con-name", self._settings.profile_name,
                "ifname", interface,
            ],
            privileged=True,
        )
        return True

    async def apply_addressing(self, interface: str) -> None:
        s = self._settings
        await self._runner.run(
            [
                "nmcli", "connection", "modify", s.profile_name,
                "connection.interface-name", interface,
                "ipv4.method", "manual",
                "ipv4.addresses", f"{s.host_address}/{s.host_prefix}",
                "ipv4.gateway", s.edge_gateway,
                "ipv4.never-default", "yes",
                "ipv4.dns", s.dns_server,
                "ipv6.method", "disabled",
            ],
            privileged=True,
        )

    async def install_dispatcher(self, interface: str, external_interface: str) -> str:
        s = self._settings
        script = render_dispatcher_script(interface, external_interface, s.nat_tag, s.dns_server)
        path = s.dispatcher_path
        await self._runner.run(["tee", path], privileged=True, input_text=script)
        await self._runner.run(["chmod", "0755", path], privileged=True)
        return path

    async def reload(self) -> None:
        await self._runner.run(["nmcli", "connection", "reload"], privileged=True)

    async def connection_up(self) -> None:
        await self._runner.run(["nmcli", "connection", "up", self._settings.profile_name], privileged=True)

    async def enable_autoconnect(self) -> None:
        await self._runner.run(
            ["nmcli", "connection", "modify", self._settings.profile_name, "connection.autoconnect", "yes"],
            privileged=True,
        )

    # --- Sequence

    async def _step(self, name: str, action: Callable[[], Awaitable[object]], failures: List[ProvisionFailed]) -> None:
        self._log("INFO", f"START {name}")
        try:
            await action()
        except RemoteFault as exc:
            self._log("ERROR", f"ERROR {name}: {exc}")
            failures.append(ProvisionFailed(name, exc))
            return
        self._log("INFO", f"SUCCESS {name}")

    async def provision(self, interface: Optional[str] = None) -> ProvisionResult:
        """Run every step; raise ProvisionFailed for the first failed one at the end."""
        failures: List[ProvisionFailed] = []

        external = await self.detect_external_interface()
        if interface is None:
            interface = self.detect_interface(exclude=[external])
        self._log("INFO", f"Using interface {interface} (uplink {external})")

        await self._step("create network profile", lambda: self.create_profile(interface), failures)
        await self._step("apply static addressing", lambda: self.apply_addressing(interface), failures)
        await self._step(
            "install NAT dispatcher script",
            lambda: self.install_dispatcher(interface, external),
            failures,
        )
        await self._step("reload network connections", self.reload, failures)

        if failures:
            raise failures[0]
        return ProvisionResult(interface=interface, external_interface=external)

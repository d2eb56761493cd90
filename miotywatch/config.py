"""
Runtime configuration for the mioty EdgeCard watchdog.

Environment variables (defaults in brackets):
  MIOTY_EDGE_CANDIDATES     Comma-separated EdgeCard addresses to probe
                            [172.30.1.2,172.30.1.3,192.168.10.2]
  MIOTY_SSH_KEY             The only private key offered to the card [/home/rak/.ssh/id_rsa]
  MIOTY_SSH_LEGACY_RSA      Sign with ssh-rsa only, for old dropbear builds [false]
  MIOTY_SSH_CONNECT_TIMEOUT_S / MIOTY_SSH_COMMAND_TIMEOUT_S / MIOTY_FETCH_TIMEOUT_S
                            [5 / 300 / 600]
  MIOTY_BS_DIR              Base-station install dir on the card [/home/root/mioty_bs]
  MIOTY_SERVICE_NAME        Remote service unit [mioty_bs]
  MIOTY_PROFILE_NAME        NetworkManager profile [mioty]
  MIOTY_HOST_ADDRESS / MIOTY_HOST_PREFIX / MIOTY_EDGE_GATEWAY / MIOTY_DNS_SERVER
                            [172.30.1.1 / 24 / 172.30.1.2 / 8.8.8.8]
  MIOTY_FALLBACK_INTERFACE  Interface used when detection finds nothing [eth1]
  MIOTY_DISPATCHER_DIR      [/etc/NetworkManager/dispatcher.d]
  MIOTY_NAT_TAG             iptables comment marking our rules [mioty-nat]
  MIOTY_SUDO                Prefix for privileged host commands [sudo -n]
  MIOTY_PROVISION_HOST      Set up host networking on first contact [true]
  MIOTY_DISCOVERY_INTERVAL_S / MIOTY_RECONCILE_INTERVAL_S / MIOTY_RECONCILE_OFFSET_S
                            [20 / 30 / 10]
  MIOTY_LOG_FILE            Process log file [/var/log/miotywatch/miotywatch.log]
  MIOTY_HTTP_HOST / MIOTY_HTTP_PORT [0.0.0.0 / 5000]
  MIOTY_PINNED_ID           Unique base station id forced on every config write
                            [9C-65-F9-FF-FE-55-44-33]
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shlex
from typing import List, Tuple

log = logging.getLogger(__name__)


# ───────────────────────── helper functions ─────────────────────────
def env_bool(key: str, default: bool) -> bool:
    """Read a boolean environment variable."""
    val = os.getenv(key)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def env_float(key: str, default: float) -> float:
    """Read a float environment variable, falling back to default on error."""
    raw = os.getenv(key, None)
    try:
        return float(raw if raw is not None else default)
    except (TypeError, ValueError):
        log.warning("Invalid float for %s; using default %.3f", key, default)
        return default


def env_int(key: str, default: int) -> int:
    raw = os.getenv(key, None)
    try:
        return int(raw if raw is not None else default)
    except (TypeError, ValueError):
        log.warning("Invalid integer for %s; using default %d", key, default)
        return default


def env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None:
        return default
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


# ───────────────────────── defaults ─────────────────────────
DEFAULT_CANDIDATES = ("172.30.1.2", "172.30.1.3", "192.168.10.2")
DEFAULT_PINNED_ID = "9C-65-F9-FF-FE-55-44-33"

LOG_CAPACITY = 100
DEFAULT_LOG_LIMIT = 50


@dataclasses.dataclass(frozen=True)
class Settings:
    edge_candidates: Tuple[str, ...] = DEFAULT_CANDIDATES
    ssh_user: str = "root"
    ssh_key: str = "/home/rak/.ssh/id_rsa"
    ssh_connect_timeout_s: int = 5
    ssh_command_timeout_s: float = 300.0
    fetch_timeout_s: float = 600.0
    ssh_legacy_rsa: bool = False

    bs_dir: str = "/home/root/mioty_bs"
    bs_config_name: str = "mioty_bs_config.xml"
    legacy_config_path: str = "/etc/mioty/config.json"
    service_name: str = "mioty_bs"

    profile_name: str = "mioty"
    host_address: str = "172.30.1.1"
    host_prefix: int = 24
    edge_gateway: str = "172.30.1.2"
    dns_server: str = "8.8.8.8"
    fallback_interface: str = "eth1"
    fallback_external_interface: str = "eth0"
    dispatcher_dir: str = "/etc/NetworkManager/dispatcher.d"
    nat_tag: str = "mioty-nat"
    sudo: str = "sudo -n"
    local_timeout_s: float = 30.0
    provision_host: bool = True

    discovery_interval_s: float = 20.0
    reconcile_interval_s: float = 30.0
    reconcile_offset_s: float = 10.0
    reconcile_max_instances: int = 2

    pinned_id: str = DEFAULT_PINNED_ID
    log_file: str = "/var/log/miotywatch/miotywatch.log"
    http_host: str = "0.0.0.0"
    http_port: int = 5000

    @property
    def remote_config_path(self) -> str:
        return f"{self.bs_dir.rstrip('/')}/{self.bs_config_name}"

    @property
    def sudo_argv(self) -> List[str]:
        return shlex.split(self.sudo)

    @property
    def dispatcher_path(self) -> str:
        return os.path.join(self.dispatcher_dir, f"90-{self.profile_name}-nat")


def load_settings() -> Settings:
    """Snapshot the MIOTY_* environment into a Settings object."""
    return Settings(
        edge_candidates=env_list("MIOTY_EDGE_CANDIDATES", DEFAULT_CANDIDATES),
        ssh_key=os.getenv("MIOTY_SSH_KEY", Settings.ssh_key),
        ssh_legacy_rsa=env_bool("MIOTY_SSH_LEGACY_RSA", False),
        ssh_connect_timeout_s=env_int("MIOTY_SSH_CONNECT_TIMEOUT_S", 5),
        ssh_command_timeout_s=env_float("MIOTY_SSH_COMMAND_TIMEOUT_S", 300.0),
        fetch_timeout_s=env_float("MIOTY_FETCH_TIMEOUT_S", 600.0),
        bs_dir=os.getenv("MIOTY_BS_DIR", Settings.bs_dir),
        service_name=os.getenv("MIOTY_SERVICE_NAME", Settings.service_name),
        profile_name=os.getenv("MIOTY_PROFILE_NAME", Settings.profile_name),
        host_address=os.getenv("MIOTY_HOST_ADDRESS", Settings.host_address),
        host_prefix=env_int("MIOTY_HOST_PREFIX", 24),
        edge_gateway=os.getenv("MIOTY_EDGE_GATEWAY", Settings.edge_gateway),
        dns_server=os.getenv("MIOTY_DNS_SERVER", Settings.dns_server),
        fallback_interface=os.getenv("MIOTY_FALLBACK_INTERFACE", Settings.fallback_interface),
        dispatcher_dir=os.getenv("MIOTY_DISPATCHER_DIR", Settings.dispatcher_dir),
        nat_tag=os.getenv("MIOTY_NAT_TAG", Settings.nat_tag),
        sudo=os.getenv("MIOTY_SUDO", Settings.sudo),
        provision_host=env_bool("MIOTY_PROVISION_HOST", True),
        discovery_interval_s=env_float("MIOTY_DISCOVERY_INTERVAL_S", 20.0),
        reconcile_interval_s=env_float("MIOTY_RECONCILE_INTERVAL_S", 30.0),
        reconcile_offset_s=env_float("MIOTY_RECONCILE_OFFSET_S", 10.0),
        pinned_id=os.getenv("MIOTY_PINNED_ID", DEFAULT_PINNED_ID),
        log_file=os.getenv("MIOTY_LOG_FILE", Settings.log_file),
        http_host=os.getenv("MIOTY_HTTP_HOST", Settings.http_host).strip(),
        http_port=env_int("MIOTY_HTTP_PORT", 5000),
    )

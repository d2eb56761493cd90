"""
Turns what the EdgeCard hands back into records.

Nothing in here raises on bad input: the card is often mid-reboot or has
not written its config yet, and a reconcile cycle must go on regardless.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .models import RemoteConfig, RemoteSnapshot

log = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n---\n"

# field -> XML element name
XML_FIELDS = {
    "unique_base_station_id": "uniqueBaseStationId",
    "base_station_name": "baseName",
    "base_station_vendor": "baseVendor",
    "base_station_model": "baseModel",
    "service_center_addr": "serviceCenterAddr",
    "service_center_port": "serviceCenterPort",
    "profile": "profile",
    "tls_auth_required": "tlsAuthRequired",
    "tls_allow_insecure": "tlsAllowInsecure",
}

_DEFAULTS = RemoteConfig()


def _parse_xml(xml_bytes: Optional[bytes]) -> Optional[Dict[str, str]]:
    """Flatten the document to {element name: text}; first occurrence wins."""
    if not xml_bytes:
        return None
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        log.debug("Remote config XML unparsable: %s", exc)
        return None
    fields: Dict[str, str] = {}
    for element in root.iter():
        tag = element.tag.rsplit("}", 1)[-1]
        if tag not in fields and element.text is not None:
            fields[tag] = element.text.strip()
    return fields


def _text(raw: Optional[str], default: str) -> str:
    return raw if raw else default


def _flag(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw == "true"


def _number(raw: Optional[str], default: int) -> Union[int, str]:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return raw


def _convert(name: str) -> Callable[[Optional[str], Any], Any]:
    if name in ("tls_auth_required", "tls_allow_insecure"):
        return _flag
    if name == "service_center_port":
        return _number
    return _text


def _legacy_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def extract_config(xml_bytes: Optional[bytes], legacy: Optional[Mapping[str, Any]] = None) -> RemoteConfig:
    """Build a RemoteConfig from the card's XML, then the legacy JSON, then defaults."""
    fields = _parse_xml(xml_bytes) or {}
    legacy = legacy or {}
    values: Dict[str, Any] = {}
    for name, element in XML_FIELDS.items():
        raw = fields.get(element)
        if raw is None:
            raw = _legacy_text(legacy.get(element))
        values[name] = _convert(name)(raw, getattr(_DEFAULTS, name))
    return RemoteConfig(**values)


def parse_legacy_json(text: Optional[str]) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def snapshot_command(service_name: str, legacy_path: str) -> str:
    """One round-trip probe; sections are split on a '---' line."""
    sections = [
        "hostname 2>/dev/null",
        "uptime 2>/dev/null",
        "free 2>/dev/null | awk 'NR==2 && $2>0 {printf \"%d%%\", $3/$2*100}'",
        "tr -d '\\000' </proc/device-tree/model 2>/dev/null",
        "grep VERSION_ID /etc/os-release 2>/dev/null | cut -d= -f2 | tr -d '\"'",
        "uname -r 2>/dev/null",
        f"systemctl is-enabled {service_name} 2>/dev/null",
        f"cat {legacy_path} 2>/dev/null",
    ]
    return "; echo; echo '---'; ".join(f"{{ {s}; }}" for s in sections) + "; exit 0"


_UPTIME_RE = re.compile(r"up\s+(.*?),\s+\d+\s+users?", re.IGNORECASE)


def _short_uptime(raw: str) -> str:
    match = _UPTIME_RE.search(raw)
    if match:
        return match.group(1).strip()
    if " up " in raw:
        return raw.split(" up ", 1)[1].split(",  load", 1)[0].strip(" ,")
    return raw or "unknown"


def parse_remote_snapshot(output: str) -> RemoteSnapshot:
    parts = [p.strip() for p in ("\n" + output + "\n").split(SECTION_SEPARATOR)]
    parts += [""] * (8 - len(parts))
    hostname, uptime, memory, model, firmware, kernel, enabled, legacy = parts[:8]
    defaults = RemoteSnapshot()
    return RemoteSnapshot(
        hostname=hostname,
        uptime=_short_uptime(uptime) if uptime else defaults.uptime,
        memory_usage=memory or defaults.memory_usage,
        model=model.replace("\x00", "").strip() or defaults.model,
        firmware_version=firmware or defaults.firmware_version,
        kernel_version=kernel or defaults.kernel_version,
        auto_start=enabled == "enabled",
        legacy=parse_legacy_json(legacy),
    )

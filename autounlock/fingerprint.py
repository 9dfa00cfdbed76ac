"""Hardware fingerprint probing and key derivation."""

from __future__ import annotations

import json
import re
from typing import List, Optional, Tuple

from .errors import HardwareUnavailable
from .executil import run, trace
from .model import UNKNOWN_SERIALS, HardwareFingerprint

ARP_TIMEOUT = 2.0

_REPLY_RE = re.compile(r"reply from\s+\S+\s+\[([0-9A-Fa-f:]{11,17})\]", re.IGNORECASE)


def motherboard_serial() -> str:
    res = run(["dmidecode", "-s", "baseboard-serial-number"])
    if res.rc != 0:
        trace("fingerprint.serial_failed", rc=res.rc, err=(res.err or "").strip())
        return ""
    # only trailing newlines are dropped; the serial feeds the key verbatim
    return (res.out or "").rstrip("\n")


def default_routes() -> List[Tuple[str, str]]:
    """Return ``(interface, gateway)`` for every default route, in table order."""

    res = run(["ip", "-j", "route", "show", "default"])
    if res.rc != 0:
        return []
    routes: List[Tuple[str, str]] = []
    try:
        payload = json.loads(res.out or "[]")
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, list):
        for entry in payload:
            if not isinstance(entry, dict):
                continue
            dev, gw = entry.get("dev"), entry.get("gateway")
            if dev and gw:
                routes.append((dev, gw))
        return routes
    # plain ``ip route`` text: "default via <gw> dev <iface> ..."
    for line in (res.out or "").splitlines():
        fields = line.split()
        if len(fields) >= 5 and fields[0] == "default" and fields[1] == "via" and fields[3] == "dev":
            routes.append((fields[4], fields[2]))
    return routes


def resolve_gateway_mac(interface: str, gateway: str) -> Optional[str]:
    res = run(
        ["arping", "-c", "1", "-w", "1", "-I", interface, gateway],
        timeout=ARP_TIMEOUT,
    )
    match = _REPLY_RE.search(res.out or "")
    if not match:
        trace("fingerprint.arping_miss", interface=interface, gateway=gateway, rc=res.rc)
        return None
    return match.group(1)


def gateway_mac() -> str:
    routes = default_routes()
    if not routes:
        trace("fingerprint.no_default_route")
        return ""
    for interface, gateway in routes:
        mac = resolve_gateway_mac(interface, gateway)
        if mac:
            trace("fingerprint.gateway", interface=interface, gateway=gateway)
            return mac
    return ""


def read_fingerprint() -> HardwareFingerprint:
    """Probe both identifiers; raise ``HardwareUnavailable`` when either is unusable."""

    serial = motherboard_serial()
    mac = gateway_mac()
    fp = HardwareFingerprint(serial=serial, mac=mac)
    if not fp.valid:
        missing = []
        if not serial or serial.strip().lower() in UNKNOWN_SERIALS:
            missing.append("motherboard serial")
        if not mac:
            missing.append("gateway MAC address")
        raise HardwareUnavailable(
            "cannot detect hardware fingerprint: missing " + " and ".join(missing or ["hardware data"]),
            serial_present=bool(serial),
            mac_present=bool(mac),
        )
    return fp


def derive_key() -> str:
    return read_fingerprint().derive()

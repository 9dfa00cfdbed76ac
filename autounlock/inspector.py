"""Encrypted device discovery and header inspection (read-only)."""

from __future__ import annotations

import glob
import json
import os
import re
from typing import Any, Dict, Iterable, List, Optional

from . import luks
from .errors import InspectionFailed
from .executil import run, trace
from .model import RESERVED_SLOT, V1, V2, Annotation, HeaderInfo
from .paths import pools_dir

_VERSION_RE = re.compile(r"^Version:\s*(\d+)", re.MULTILINE)
_UUID_RE = re.compile(r"^UUID:\s*(\S+)", re.MULTILINE)
_V1_SLOT_RE = re.compile(r"^Key Slot (\d+): ENABLED", re.MULTILINE)
_POOL_DISK_RE = re.compile(r'diskId(\.\d+)?="([^"]+)"')

ARRAY_PREFIX = "/dev/md"


def list_encrypted_devices() -> List[str]:
    """Return ``/dev/<name>`` for every block device ``lsblk`` reports as TYPE crypt.

    The mapping nodes live somewhere below their backing disk, so the whole
    tree is walked. The result is sorted and free of duplicates.
    """

    res = run(["lsblk", "-J", "-o", "NAME,TYPE"])
    if res.rc != 0:
        trace("inspector.lsblk_failed", rc=res.rc, err=(res.err or "").strip())
        return []
    try:
        payload = json.loads(res.out or "{}")
    except json.JSONDecodeError as exc:
        raise InspectionFailed(f"failed to parse lsblk output: {exc}") from exc

    found = set()
    stack = list(payload.get("blockdevices") or [])
    while stack:
        node = stack.pop()
        if not isinstance(node, dict):
            continue
        if node.get("type") == "crypt" and node.get("name"):
            found.add("/dev/" + node["name"])
        stack.extend(node.get("children") or [])
    devices = sorted(found)
    trace("inspector.devices", devices=devices)
    return devices


def header_format(device: str, dump: Optional[str] = None) -> int:
    text = dump if dump is not None else luks.dump_text(device)
    match = _VERSION_RE.search(text)
    if not match:
        raise InspectionFailed(f"cannot determine LUKS version of {device}", device=device)
    version = int(match.group(1))
    if version not in (V1, V2):
        raise InspectionFailed(f"unsupported LUKS version {version} on {device}", device=device)
    return version


def header_uuid(device: str, dump: Optional[str] = None) -> str:
    if dump:
        match = _UUID_RE.search(dump)
        if match:
            return match.group(1)
    return luks.luks_uuid(device)


def _annotations_from_metadata(meta: Dict[str, Any]) -> List[Annotation]:
    out: List[Annotation] = []
    tokens = meta.get("tokens") or {}
    if not isinstance(tokens, dict):
        return out
    for key, token in tokens.items():
        if not isinstance(token, dict):
            continue
        try:
            token_id = int(key)
        except (TypeError, ValueError):
            continue
        extra = token.get("metadata") if isinstance(token.get("metadata"), dict) else {}
        slots = []
        for raw in token.get("keyslots") or []:
            try:
                slots.append(int(raw))
            except (TypeError, ValueError):
                continue
        out.append(
            Annotation(
                token_id=token_id,
                type=str(token.get("type") or ""),
                keyslots=tuple(slots),
                generation_time=extra.get("generation_time"),
                version=token.get("version"),
            )
        )
    out.sort(key=lambda a: a.token_id)
    return out


def read_header(device: str) -> HeaderInfo:
    """Collect format, UUID, occupied slots and annotations for ``device``."""

    dump = luks.dump_text(device)
    version = header_format(device, dump)
    info = HeaderInfo(device=device, version=version, uuid=header_uuid(device, dump))
    if version == V1:
        info.slots = {int(m) for m in _V1_SLOT_RE.findall(dump)}
        return info
    meta = luks.dump_json(device)
    keyslots = meta.get("keyslots") or {}
    for key in keyslots:
        try:
            info.slots.add(int(key))
        except (TypeError, ValueError):
            continue
    info.annotations = _annotations_from_metadata(meta)
    return info


def occupied_slots(device: str) -> set:
    return set(read_header(device).slots)


def annotations_for(header: HeaderInfo, slot: int) -> List[Annotation]:
    return [a for a in header.annotations if slot in a.keyslots]


def annotation_for(device: str, slot: int) -> Optional[Annotation]:
    """First annotation referencing ``slot``; V1 headers never have one."""

    found = annotations_for(read_header(device), slot)
    return found[0] if found else None


def hardware_annotations_for(header: HeaderInfo, slot: int = RESERVED_SLOT) -> List[Annotation]:
    return [a for a in annotations_for(header, slot) if a.hardware]


def orphan_annotations(header: HeaderInfo) -> List[Annotation]:
    """Our annotations none of whose keyslots is occupied any more."""

    return [a for a in header.annotations if a.hardware and not any(s in header.slots for s in a.keyslots)]


# -- disk classification -------------------------------------------------


def pool_disk_ids(directory: Optional[str] = None) -> Dict[str, str]:
    """Map every pool member's disk id to its pool name."""

    directory = directory or pools_dir()
    ids: Dict[str, str] = {}
    for cfg in sorted(glob.glob(os.path.join(directory, "*.cfg"))):
        pool = os.path.splitext(os.path.basename(cfg))[0]
        try:
            with open(cfg, "r", encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    match = _POOL_DISK_RE.search(line)
                    if match and match.group(2):
                        ids[match.group(2)] = pool
        except OSError as exc:
            trace("inspector.pool_cfg_unreadable", path=cfg, error=str(exc))
    return ids


def disk_serial(disk: str) -> str:
    res = run(["udevadm", "info", "--query=property", f"--name={disk}"])
    if res.rc != 0:
        return ""
    for line in (res.out or "").splitlines():
        if line.startswith("ID_SERIAL="):
            return line.split("=", 1)[1].strip()
    return ""


def parent_disk(device: str) -> str:
    res = run(["lsblk", "-no", "PKNAME", device])
    if res.rc != 0:
        return ""
    lines = [ln.strip() for ln in (res.out or "").splitlines() if ln.strip()]
    return f"/dev/{lines[0]}" if lines else ""


def classify_device(device: str, pools: Optional[Dict[str, str]] = None) -> Dict[str, Optional[str]]:
    """Report-only grouping: ``array``, ``pool`` or ``standalone``."""

    if device.startswith(ARRAY_PREFIX):
        return {"device": device, "kind": "array", "parent": None, "pool": None}
    parent = parent_disk(device)
    if not parent:
        return {"device": device, "kind": "standalone", "parent": None, "pool": None}
    pools = pool_disk_ids() if pools is None else pools
    serial = disk_serial(parent)
    if serial and serial in pools:
        return {"device": device, "kind": "pool", "parent": parent, "pool": pools[serial]}
    return {"device": device, "kind": "standalone", "parent": parent, "pool": None}


def classify_devices(devices: Iterable[str]) -> List[Dict[str, Optional[str]]]:
    pools = pool_disk_ids()
    return [classify_device(d, pools) for d in devices]

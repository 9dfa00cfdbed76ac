"""Boot event actions: write the derived key before the array starts, clear it after."""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

from .executil import info, trace
from .fingerprint import read_fingerprint
from .paths import default_keyfile, disk_cfg


def read_disk_cfg(path: Optional[str] = None) -> Dict[str, str]:
    path = path or disk_cfg()
    values: Dict[str, str] = {}
    if not os.path.isfile(path):
        return values
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            if "=" not in line or line.lstrip().startswith("#"):
                continue
            key, _, raw = line.partition("=")
            values[key.strip()] = raw.strip().replace("\r", "").replace('"', "")
    return values


def keyfile_location(cfg: Optional[Dict[str, str]] = None) -> str:
    cfg = read_disk_cfg() if cfg is None else cfg
    return cfg.get("luksKeyfile") or default_keyfile()


def auto_start_enabled(cfg: Optional[Dict[str, str]] = None) -> bool:
    cfg = read_disk_cfg() if cfg is None else cfg
    return cfg.get("startArray") == "yes"


def fetch_key() -> Dict[str, Any]:
    """Write the derived key to the platform keyfile when the array auto-starts.

    Raises ``HardwareUnavailable`` when the fingerprint cannot be read.
    """

    cfg = read_disk_cfg()
    path = keyfile_location(cfg)
    if not auto_start_enabled(cfg):
        trace("hooks.fetch_skipped", path=path)
        return {"written": False, "path": path, "reason": "array auto-start disabled"}
    key = read_fingerprint().derive()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(key)
    info("hooks.key_written", path=path)
    return {"written": True, "path": path, "reason": None}


def clear_key() -> Dict[str, Any]:
    path = keyfile_location()
    if not os.path.isfile(path):
        return {"cleared": False, "path": path}
    with open(path, "w", encoding="utf-8"):
        pass
    info("hooks.key_cleared", path=path)
    return {"cleared": True, "path": path}

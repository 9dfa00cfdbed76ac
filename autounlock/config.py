"""Persisted auto-unlock settings (shell-sourceable ``KEY=value`` file)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .executil import trace, warn
from .paths import config_file

FIELDS = {
    "auto_unlock_enabled": "AUTO_UNLOCK_ENABLED",
    "encrypted_disks_available": "ENCRYPTED_DISKS_AVAILABLE",
}


def write_file(path: Path, content: str, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(content)
        try:
            fh.flush()
            os.fsync(fh.fileno())
        except OSError:
            pass
    os.replace(tmp_path, path)
    os.chmod(path, mode)


def _as_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    value = raw.strip().strip('"').strip("'").lower()
    if value in ("true", "yes", "1", "on"):
        return True
    if value in ("false", "no", "0", "off"):
        return False
    return default


@dataclass
class AutoUnlockConfig:
    auto_unlock_enabled: bool = False
    encrypted_disks_available: bool = True

    def render(self) -> str:
        lines = []
        for attr, key in FIELDS.items():
            lines.append(f"{key}={'true' if getattr(self, attr) else 'false'}")
        return "\n".join(lines) + "\n"


class ConfigStore:
    """Load/save the settings file; a missing file is created with defaults.

    ``update`` is a plain read-modify-write. Two processes updating at once
    can lose one of the writes.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or config_file())

    def _parse(self, text: str) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, raw = line.partition("=")
            values[key.strip()] = raw
        return values

    def load(self) -> AutoUnlockConfig:
        if not self.path.exists():
            cfg = AutoUnlockConfig()
            try:
                self.save(cfg)
            except OSError as exc:
                warn("config.create_failed", path=str(self.path), error=str(exc))
            return cfg
        values = self._parse(self.path.read_text(encoding="utf-8", errors="replace"))
        defaults = AutoUnlockConfig()
        return AutoUnlockConfig(
            **{attr: _as_bool(values.get(key), getattr(defaults, attr)) for attr, key in FIELDS.items()}
        )

    def save(self, cfg: AutoUnlockConfig) -> None:
        write_file(self.path, cfg.render(), 0o644)
        trace("config.saved", path=str(self.path), **{a: getattr(cfg, a) for a in FIELDS})

    def update(self, **changes) -> AutoUnlockConfig:
        unknown = set(changes) - set(FIELDS)
        if unknown:
            raise KeyError(f"unknown config field(s): {', '.join(sorted(unknown))}")
        cfg = self.load()
        for attr, value in changes.items():
            setattr(cfg, attr, bool(value))
        self.save(cfg)
        return cfg

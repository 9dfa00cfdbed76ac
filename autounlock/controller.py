"""Auto-unlock enable/disable: persisted flag plus boot event hook files."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import ConfigStore, write_file
from .errors import ConfigInconsistent, HookSourceMissing
from .executil import info, warn
from .paths import delete_key_source, event_started_dir, event_starting_dir, fetch_key_source

FETCH_KEY = "fetch_key"
DELETE_KEY = "delete_key"

_SHIMS = {
    FETCH_KEY: [
        "#!/bin/sh",
        "# array 'starting' event: write the hardware-derived keyfile",
        "exec autounlock fetch-key",
        "",
    ],
    DELETE_KEY: [
        "#!/bin/sh",
        "# array 'started' event: truncate the keyfile again",
        "exec autounlock clear-key",
        "",
    ],
}


class AutoUnlockController:
    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        starting_dir: Optional[str] = None,
        started_dir: Optional[str] = None,
        sources: Optional[Dict[str, str]] = None,
    ):
        self.store = store or ConfigStore()
        self.starting_dir = Path(starting_dir or event_starting_dir())
        self.started_dir = Path(started_dir or event_started_dir())
        self.sources = {k: Path(v) for k, v in (sources or {FETCH_KEY: fetch_key_source(), DELETE_KEY: delete_key_source()}).items()}

    @property
    def targets(self) -> Dict[str, Path]:
        return {
            FETCH_KEY: self.starting_dir / FETCH_KEY,
            DELETE_KEY: self.started_dir / DELETE_KEY,
        }

    def ensure_sources(self) -> None:
        for name, src in self.sources.items():
            if src.is_file():
                continue
            try:
                write_file(src, "\n".join(_SHIMS[name]), 0o755)
            except OSError as exc:
                raise HookSourceMissing(f"{name} source script not found at {src}", error=str(exc)) from exc
            info("controller.source_written", path=str(src))

    def hooks_status(self) -> str:
        return "enabled" if all(p.is_file() for p in self.targets.values()) else "disabled"

    def enable(self) -> Dict[str, Any]:
        self.ensure_sources()
        self.store.update(auto_unlock_enabled=True)
        created: List[str] = []
        for name, dst in self.targets.items():
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.sources[name], dst)
            os.chmod(dst, 0o755)
            created.append(str(dst))
        info("controller.enabled", hooks=created)
        return {"enabled": True, "hooks": created}

    def disable(self) -> Dict[str, Any]:
        self.store.update(auto_unlock_enabled=False)
        details: List[Dict[str, Any]] = []
        for dst in self.targets.values():
            entry: Dict[str, Any] = {"path": str(dst), "existed": dst.is_file(), "removed": False}
            if entry["existed"]:
                try:
                    dst.unlink()
                    entry["removed"] = True
                except FileNotFoundError:
                    entry["removed"] = False
            details.append(entry)
        changed = any(item["removed"] for item in details)
        info("controller.disabled", changed=changed)
        return {"enabled": False, "hooks": details, "changed": changed}

    def check_consistency(self) -> Optional[ConfigInconsistent]:
        enabled = self.store.load().auto_unlock_enabled
        hooks = self.hooks_status()
        if enabled == (hooks == "enabled"):
            return None
        issue = ConfigInconsistent(
            "config setting and hook files don't match",
            config_enabled=enabled,
            hooks=hooks,
        )
        warn("controller.inconsistent", config_enabled=enabled, hooks=hooks)
        return issue

    def status(self) -> Dict[str, Any]:
        cfg = self.store.load()
        targets = self.targets
        issue = self.check_consistency()
        return {
            "config_enabled": cfg.auto_unlock_enabled,
            "hooks": self.hooks_status(),
            FETCH_KEY: targets[FETCH_KEY].is_file(),
            DELETE_KEY: targets[DELETE_KEY].is_file(),
            "warning": issue.reason if issue else None,
        }

from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/"
PLUGIN_NAME = "encrypted-drive-manager"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the filesystem root all host locations are resolved against.

    ``AUTOUNLOCK_BASE_PATH`` relocates the whole tree, which is how the test
    suite and chroot-based tooling point the plugin at a scratch directory.
    """

    override = os.environ.get("AUTOUNLOCK_BASE_PATH")
    if override:
        return _expand(override)
    return _DEFAULT_BASE


def _under_base(env: str, default: str) -> str:
    override = os.environ.get(env)
    if override:
        return _expand(override)
    return str(Path(base_path()) / default.lstrip("/"))


def persistent_dir() -> str:
    return _under_base("AUTOUNLOCK_PERSISTENT_DIR", f"/boot/config/plugins/{PLUGIN_NAME}")


def config_file() -> str:
    return str(Path(persistent_dir()) / "config")


def fetch_key_source() -> str:
    return str(Path(persistent_dir()) / "fetch_key")


def delete_key_source() -> str:
    return str(Path(persistent_dir()) / "delete_key")


def event_starting_dir() -> str:
    return _under_base("AUTOUNLOCK_EVENT_STARTING_DIR", "/usr/local/emhttp/webGui/event/starting")


def event_started_dir() -> str:
    return _under_base("AUTOUNLOCK_EVENT_STARTED_DIR", "/usr/local/emhttp/webGui/event/started")


def archive_dir() -> str:
    return _under_base("AUTOUNLOCK_ARCHIVE_DIR", "/boot/config/luksheaders")


def download_dir() -> str:
    return _under_base("AUTOUNLOCK_DOWNLOAD_DIR", "/tmp/luksheaders")


def disk_cfg() -> str:
    return _under_base("AUTOUNLOCK_DISK_CFG", "/boot/config/disk.cfg")


def pools_dir() -> str:
    return _under_base("AUTOUNLOCK_POOLS_DIR", "/boot/config/pools")


def default_keyfile() -> str:
    return str(Path(base_path()) / "root" / "keyfile")


def logs_dir() -> str:
    return str(Path(persistent_dir()) / "logs")


def user_share_mount() -> str:
    return str(Path(base_path()) / "mnt" / "user")

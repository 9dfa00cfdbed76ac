"""System readiness token and the cheap status queries behind it."""

from __future__ import annotations

import shutil
import tempfile
from typing import Callable, Iterable, List, Optional

from . import inspector, luks
from .config import ConfigStore
from .errors import AutoUnlockError, HardwareUnavailable
from .executil import run, trace
from .fingerprint import read_fingerprint
from .paths import user_share_mount
from .pipeline import write_key_file

ARRAY_STOPPED = "array_stopped"
NO_ENCRYPTED_DISKS = "no_encrypted_disks"
SETUP_REQUIRED = "setup_required"
READY_DISABLED = "ready_disabled"
READY_ENABLED = "ready_enabled"

STATES = (ARRAY_STOPPED, NO_ENCRYPTED_DISKS, SETUP_REQUIRED, READY_DISABLED, READY_ENABLED)


def array_running() -> bool:
    if run(["mountpoint", "-q", user_share_mount()]).rc == 0:
        return True
    return run(["pgrep", "-x", "shfs"]).rc == 0


def keys_work(devices: Optional[Iterable[str]] = None) -> bool:
    """Derive a fresh key and report whether it opens any encrypted device."""

    try:
        key = read_fingerprint().derive()
    except HardwareUnavailable as exc:
        trace("readiness.no_fingerprint", reason=exc.reason)
        return False
    devices = inspector.list_encrypted_devices() if devices is None else list(devices)
    if not devices:
        return False
    work_dir = tempfile.mkdtemp(prefix="luks_test_key_")
    try:
        key_file = write_key_file(work_dir, key)
        for device in devices:
            if luks.test_keyfile(device, key_file):
                trace("readiness.key_works", device=device)
                return True
        return False
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)


def keys_exist(devices: Optional[Iterable[str]] = None) -> bool:
    """True when the first encrypted device carries one of our annotations."""

    devices = inspector.list_encrypted_devices() if devices is None else list(devices)
    if not devices:
        return False
    try:
        header = inspector.read_header(devices[0])
    except AutoUnlockError as exc:
        trace("readiness.header_unreadable", device=devices[0], error=exc.reason)
        return False
    return any(ann.hardware for ann in header.annotations)


def unlockable_devices(devices: Optional[Iterable[str]] = None) -> str:
    devices = inspector.list_encrypted_devices() if devices is None else list(devices)
    if not devices:
        return "none"
    names: List[str] = [d.rsplit("/", 1)[-1] for d in devices]
    return f"{len(names)} device(s): {', '.join(names)}"


def system_state(
    store: ConfigStore,
    is_array_running: Optional[Callable[[], bool]] = None,
    list_devices: Optional[Callable[[], List[str]]] = None,
    derived_key_works: Optional[Callable[[List[str]], bool]] = None,
) -> str:
    """Evaluate the readiness probes in order, stopping at the first miss."""

    is_array_running = is_array_running or array_running
    list_devices = list_devices or inspector.list_encrypted_devices
    derived_key_works = derived_key_works or keys_work
    if not is_array_running():
        return ARRAY_STOPPED
    devices = list_devices()
    if not devices:
        store.update(encrypted_disks_available=False)
        return NO_ENCRYPTED_DISKS
    store.update(encrypted_disks_available=True)
    if not derived_key_works(devices):
        return SETUP_REQUIRED
    return READY_ENABLED if store.load().auto_unlock_enabled else READY_DISABLED

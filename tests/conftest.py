import json
import os
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from autounlock import archive, executil, inspector, luks, readiness
from autounlock.executil import Result
from autounlock.model import HardwareFingerprint

_PATH_ENV = (
    "AUTOUNLOCK_PERSISTENT_DIR",
    "AUTOUNLOCK_EVENT_STARTING_DIR",
    "AUTOUNLOCK_EVENT_STARTED_DIR",
    "AUTOUNLOCK_ARCHIVE_DIR",
    "AUTOUNLOCK_DOWNLOAD_DIR",
    "AUTOUNLOCK_DISK_CFG",
    "AUTOUNLOCK_POOLS_DIR",
    "LUKS_PASSPHRASE",
    "LUKS_KEYFILE",
    "LUKS_ZIP_PASSWORD",
)

FINGERPRINT = HardwareFingerprint(serial="MB-SERIAL-0001", mac="aa:bb:cc:dd:ee:ff")


@pytest.fixture(autouse=True)
def host_root(tmp_path, monkeypatch):
    """Point every host location and the trace log into ``tmp_path``."""

    root = tmp_path / "host"
    root.mkdir()
    monkeypatch.setenv("AUTOUNLOCK_BASE_PATH", str(root))
    for var in _PATH_ENV:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_LEVEL", "INFO")
    return root.resolve()


def read_log(tmp_path) -> List[dict]:
    path = tmp_path / "logs" / executil.LOG_NAME
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


class FakeDevice:
    def __init__(self, path: str, version: int, uuid: str, slots: Dict[int, str], tokens: Dict[int, dict]):
        self.path = path
        self.version = version
        self.uuid = uuid
        self.slots = dict(slots)
        self.tokens = dict(tokens)

    def opens(self, secret: Optional[str], slot: Optional[int] = None) -> bool:
        if secret is None:
            return False
        if slot is not None:
            return self.slots.get(slot) == secret
        return secret in self.slots.values()

    def text_dump(self) -> str:
        lines = [f"LUKS header information for {self.path}", "", f"Version:       \t{self.version}", f"UUID:          \t{self.uuid}", ""]
        if self.version == 1:
            for idx in range(8):
                state = "ENABLED" if idx in self.slots else "DISABLED"
                lines.append(f"Key Slot {idx}: {state}")
        else:
            lines.append("Keyslots:")
            for idx in sorted(self.slots):
                lines.append(f"  {idx}: luks2")
        return "\n".join(lines) + "\n"

    def json_dump(self) -> dict:
        return {
            "keyslots": {str(idx): {"type": "luks2"} for idx in sorted(self.slots)},
            "tokens": {str(tid): tok for tid, tok in sorted(self.tokens.items())},
            "segments": {},
            "digests": {},
            "config": {},
        }


class FakeCryptsetup:
    """In-memory stand-in for ``run`` covering cryptsetup, lsblk and zip."""

    MUTATING = ("luksAddKey", "luksKillSlot", "luksHeaderRestore")

    def __init__(self):
        self.devices: Dict[str, FakeDevice] = {}
        self.calls: List[List[str]] = []
        self.dry_calls: List[List[str]] = []
        self.add_failures = 0
        self.backup_fails = set()
        self.zip_rc = 0
        self.zip_passwords: List[str] = []
        self.token_import_rc = 0
        self.array_running = True
        self.slot_lies = False

    def add(self, path, version=2, slots=None, tokens=None, uuid=None) -> FakeDevice:
        dev = FakeDevice(
            path,
            version,
            uuid or f"uuid-{os.path.basename(path)}",
            slots if slots is not None else {0: "operator-pass"},
            tokens or {},
        )
        self.devices[path] = dev
        return dev

    def mutations(self, device: Optional[str] = None) -> List[List[str]]:
        out = []
        for cmd in self.calls:
            if cmd[0] != "cryptsetup":
                continue
            verb = cmd[1]
            if verb in self.MUTATING or (verb == "token" and cmd[2] in ("import", "remove")):
                if device is None or device in cmd:
                    out.append(cmd)
        return out

    def killed_slots(self) -> List[int]:
        return [int(cmd[-1]) for cmd in self.calls if cmd[:2] == ["cryptsetup", "luksKillSlot"]]

    # -- dispatch ----------------------------------------------------------

    def __call__(self, cmd, check=False, dry_run=False, timeout=None, input=None, env=None, secret_args=()):
        cmd = list(cmd)
        if dry_run:
            self.dry_calls.append(cmd)
            return Result(0, "DRY-RUN: " + " ".join(cmd), "", 0.0)
        self.calls.append(cmd)
        if cmd[0] == "cryptsetup":
            return self._cryptsetup(cmd, input)
        if cmd[0] == "lsblk":
            return self._lsblk(cmd)
        if cmd[0] == "zip":
            return self._zip(cmd)
        if cmd[0] == "mountpoint":
            return Result(0 if self.array_running else 1, "", "", 0.0)
        return Result(1, "", "not faked", 0.0)

    def _lsblk(self, cmd):
        if "-J" in cmd:
            children = [{"name": os.path.basename(p), "type": "crypt"} for p in self.devices]
            payload = {"blockdevices": [{"name": "sdz", "type": "disk", "children": [{"name": "sdz1", "type": "part", "children": children}]}]}
            return Result(0, json.dumps(payload), "", 0.0)
        return Result(0, "", "", 0.0)

    def _zip(self, cmd):
        password = cmd[cmd.index("-P") + 1]
        self.zip_passwords.append(password)
        if self.zip_rc:
            return Result(self.zip_rc, "", "zip error", 0.0)
        out_path = cmd[cmd.index("-P") + 2]
        members = cmd[cmd.index("-P") + 3:]
        Path(out_path).write_text("\n".join(os.path.basename(m) for m in members), encoding="utf-8")
        return Result(0, "", "", 0.0)

    @staticmethod
    def _secret(cmd, stdin):
        if "--key-file" not in cmd:
            return None
        src = cmd[cmd.index("--key-file") + 1]
        if src == "-":
            return stdin
        try:
            return Path(src).read_text(encoding="utf-8")
        except OSError:
            return None

    @staticmethod
    def _opt(cmd, flag):
        return int(cmd[cmd.index(flag) + 1]) if flag in cmd else None

    def _cryptsetup(self, cmd, stdin):
        verb = cmd[1]
        if verb == "token":
            return self._token(cmd, stdin)
        device = self._device_arg(cmd)
        dev = self.devices.get(device)
        if dev is None:
            return Result(4, "", f"Device {device} does not exist", 0.0)
        secret = self._secret(cmd, stdin)

        if verb == "luksOpen":
            slot = self._opt(cmd, "--key-slot")
            return Result(0 if dev.opens(secret, slot) else 2, "", "", 0.0)
        if verb == "luksAddKey":
            if not dev.opens(secret):
                return Result(2, "", "No key available with this passphrase.", 0.0)
            if self.add_failures:
                self.add_failures -= 1
                return Result(1, "", "Device busy", 0.0)
            slot = self._opt(cmd, "--key-slot")
            if slot is not None and slot in dev.slots:
                return Result(1, "", f"Keyslot {slot} is not free.", 0.0)
            if slot is None:
                limit = 8 if dev.version == 1 else 32
                slot = next(i for i in range(limit) if i not in dev.slots)
            new_key = Path(cmd[-1]).read_text(encoding="utf-8")
            dev.slots[slot] = "corrupted" if self.slot_lies else new_key
            return Result(0, f"Key slot {slot} created.\n", "", 0.0)
        if verb == "luksKillSlot":
            slot = int(cmd[-1])
            if not dev.opens(secret) or slot not in dev.slots:
                return Result(1, "", "No key available with this passphrase.", 0.0)
            del dev.slots[slot]
            return Result(0, "", "", 0.0)
        if verb == "luksHeaderBackup":
            if device in self.backup_fails:
                return Result(1, "", "backup failed", 0.0)
            target = cmd[cmd.index("--header-backup-file") + 1]
            Path(target).write_text(f"header of {device}", encoding="utf-8")
            return Result(0, "", "", 0.0)
        if verb == "luksHeaderRestore":
            return Result(0, "", "", 0.0)
        if verb == "luksDump":
            if "--dump-json-metadata" in cmd:
                return Result(0, json.dumps(dev.json_dump()), "", 0.0)
            return Result(0, dev.text_dump(), "", 0.0)
        if verb == "luksUUID":
            return Result(0, dev.uuid + "\n", "", 0.0)
        return Result(1, "", f"unknown verb {verb}", 0.0)

    def _device_arg(self, cmd):
        for part in cmd[2:]:
            if part in self.devices:
                return part
        return cmd[-1]

    def _token(self, cmd, stdin):
        action = cmd[2]
        dev = self.devices.get(cmd[-1])
        if dev is None:
            return Result(4, "", "no device", 0.0)
        if action == "import":
            if self.token_import_rc:
                return Result(self.token_import_rc, "", "token import failed", 0.0)
            token = json.loads(stdin)
            new_id = max(dev.tokens, default=-1) + 1
            dev.tokens[new_id] = token
            return Result(0, f"Token {new_id} created.\n", "", 0.0)
        token_id = int(cmd[cmd.index("--token-id") + 1])
        if action == "remove":
            if dev.tokens.pop(token_id, None) is None:
                return Result(1, "", "token missing", 0.0)
            return Result(0, "", "", 0.0)
        if action == "export":
            if token_id not in dev.tokens:
                return Result(1, "", "token missing", 0.0)
            return Result(0, json.dumps(dev.tokens[token_id]), "", 0.0)
        return Result(1, "", "bad token action", 0.0)


@pytest.fixture
def fake_cs(monkeypatch):
    fake = FakeCryptsetup()
    for module in (luks, inspector, archive, readiness):
        monkeypatch.setattr(module, "run", fake)
    return fake


@pytest.fixture
def fingerprint():
    return FINGERPRINT


@pytest.fixture
def derived_key():
    return FINGERPRINT.derive()

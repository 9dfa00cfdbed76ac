from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional

V1 = 1
V2 = 2

SLOT_COUNT = {V1: 8, V2: 32}
ORIGINAL_SLOT = 0
RESERVED_SLOT = 31

ANNOTATION_TYPE = "hardware-derived"
LEGACY_ANNOTATION_TYPES = ("unraid-derived",)
ANNOTATION_VERSION = "1.0"

UNKNOWN_SERIALS = ("unknown",)


@dataclass(frozen=True)
class Credential:
    """Operator-supplied credential: exactly one of passphrase / keyfile."""

    passphrase: Optional[str] = None
    keyfile: Optional[str] = None

    @property
    def kind(self) -> str:
        return "passphrase" if self.passphrase is not None else "keyfile"

    def __repr__(self) -> str:
        return f"Credential(kind={self.kind!r}, keyfile={self.keyfile!r})"


@dataclass(frozen=True)
class HardwareFingerprint:
    serial: str
    mac: str

    @property
    def valid(self) -> bool:
        return bool(self.serial) and bool(self.mac) and self.serial.strip().lower() not in UNKNOWN_SERIALS

    def derive(self) -> str:
        return hashlib.sha256(f"{self.serial}_{self.mac}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Annotation:
    token_id: int
    type: str
    keyslots: tuple
    generation_time: Optional[str] = None
    version: Optional[str] = None

    @property
    def hardware(self) -> bool:
        return self.type == ANNOTATION_TYPE or self.type in LEGACY_ANNOTATION_TYPES


@dataclass
class HeaderInfo:
    device: str
    version: int
    uuid: str
    slots: set = field(default_factory=set)
    annotations: List[Annotation] = field(default_factory=list)

    @property
    def slot_count(self) -> int:
        return SLOT_COUNT.get(self.version, SLOT_COUNT[V2])


@dataclass
class RunOptions:
    dry_run: bool = False
    download_mode: bool = False
    headers_only: bool = False


@dataclass
class DeviceOutcome:
    device: str
    status: str = "pending"
    reason: Optional[str] = None
    slot: Optional[int] = None
    backup: Optional[str] = None
    removed_slots: List[int] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "device": self.device,
            "status": self.status,
            "reason": self.reason,
            "slot": self.slot,
            "backup": self.backup,
            "removed_slots": list(self.removed_slots),
            "notes": list(self.notes),
        }


@dataclass
class RunReport:
    outcomes: List[DeviceOutcome] = field(default_factory=list)
    fingerprint: Optional[HardwareFingerprint] = None
    key_error: Optional[str] = None
    archive: Optional[str] = None
    archive_error: Optional[str] = None
    run_error: Optional[str] = None
    generated_at: Optional[str] = None

    def _by(self, status: str) -> List[DeviceOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def added(self) -> List[DeviceOutcome]:
        return self._by("added")

    @property
    def skipped(self) -> List[DeviceOutcome]:
        return self._by("skipped")

    @property
    def backed_up(self) -> List[DeviceOutcome]:
        return self._by("backed_up")

    @property
    def failed(self) -> List[DeviceOutcome]:
        return self._by("failed")

    @property
    def succeeded(self) -> bool:
        return any(o.status != "failed" for o in self.outcomes)

    def as_dict(self) -> Dict[str, object]:
        return {
            "added": [o.device for o in self.added],
            "skipped": [o.device for o in self.skipped],
            "backed_up": [o.device for o in self.backed_up],
            "failed": [{"device": o.device, "reason": o.reason} for o in self.failed],
            "devices": [o.as_dict() for o in self.outcomes],
            "key_error": self.key_error,
            "archive": self.archive,
            "archive_error": self.archive_error,
            "run_error": self.run_error,
            "succeeded": self.succeeded,
        }

"""Reserved-slot safety validation and slot reclaim strategies.

Every slot removal in this package goes through one of the two strategies
below, and both consult :func:`credential_opens_slot` first: a slot the
operator's credential can open is never reclaimed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from . import inspector, luks
from .errors import AutoUnlockError, SafetyAbort, SlotOperationFailed
from .executil import info, trace, warn
from .model import ORIGINAL_SLOT, RESERVED_SLOT, V2, Credential, HeaderInfo

UNSUPPORTED = "unsupported"
EMPTY = "empty"
HARDWARE_ANNOTATED = "hardware_annotated"
OTHER = "other"
ERROR = "error"

REPLACE = "replace"
INSPECT = "inspect"


@dataclass
class SafetyDecision:
    device: str
    slot: int
    state: str
    allowed: bool
    reason: str
    credential_opens_slot: Optional[bool] = None

    def as_dict(self):
        return {
            "device": self.device,
            "slot": self.slot,
            "state": self.state,
            "allowed": self.allowed,
            "reason": self.reason,
            "credential_opens_slot": self.credential_opens_slot,
        }


def credential_opens_slot(device: str, credential: Credential, slot: int) -> bool:
    return luks.test_open(device, credential, slot=slot)


def _record(decision: SafetyDecision) -> SafetyDecision:
    info("safety.decision", **decision.as_dict())
    return decision


def inspect_reserved_slot(device: str, header: Optional[HeaderInfo] = None) -> str:
    try:
        header = header or inspector.read_header(device)
    except AutoUnlockError as exc:
        trace("safety.inspect_failed", device=device, error=exc.reason)
        return ERROR
    if header.version != V2:
        return UNSUPPORTED
    if RESERVED_SLOT not in header.slots:
        return EMPTY
    if inspector.hardware_annotations_for(header, RESERVED_SLOT):
        return HARDWARE_ANNOTATED
    return OTHER


def validate_reserved_slot(
    device: str,
    credential: Credential,
    action: str = REPLACE,
    header: Optional[HeaderInfo] = None,
) -> SafetyDecision:
    """Decide whether slot 31 of ``device`` may be replaced.

    The credential must open the device before the slot is even looked at.
    ``inspect`` only reports; it never refuses on its own.
    """

    if not luks.test_open(device, credential):
        return _record(SafetyDecision(device, RESERVED_SLOT, ERROR, False, "credential cannot unlock device"))

    state = inspect_reserved_slot(device, header)
    replacing = action == REPLACE
    if state == UNSUPPORTED:
        return _record(SafetyDecision(device, RESERVED_SLOT, state, not replacing, "reserved slot not available on this header format"))
    if state == ERROR:
        return _record(SafetyDecision(device, RESERVED_SLOT, state, False, "failed to inspect reserved slot"))
    if state == EMPTY:
        return _record(SafetyDecision(device, RESERVED_SLOT, state, True, "reserved slot empty"))

    opens = credential_opens_slot(device, credential, RESERVED_SLOT)
    if opens:
        return _record(SafetyDecision(device, RESERVED_SLOT, state, not replacing, "slot protected", credential_opens_slot=True))
    return _record(
        SafetyDecision(device, RESERVED_SLOT, state, True, "reserved slot not reachable by credential", credential_opens_slot=False)
    )


class ReservedSlotStrategy:
    """V2 headers: the hardware key always lives in slot 31."""

    name = "reserved-slot"
    target_slot: Optional[int] = RESERVED_SLOT
    annotates = True

    def reclaim(self, device: str, credential: Credential, header: HeaderInfo, dry_run: bool = False) -> List[int]:
        decision = validate_reserved_slot(device, credential, REPLACE, header)
        if not decision.allowed:
            raise SafetyAbort(decision.reason, state=decision.state, device=device)
        if RESERVED_SLOT not in header.slots:
            return []
        luks.kill_slot(device, RESERVED_SLOT, credential, dry_run=dry_run)
        info("safety.slot_removed", device=device, slot=RESERVED_SLOT, state=decision.state, dry_run=dry_run)
        return [RESERVED_SLOT]


class LegacySlotStrategy:
    """Headers without a reserved slot: sweep slots our annotations point at.

    A V1 header carries no annotations, so nothing is removed there and the
    new key lands in whichever slot cryptsetup picks.
    """

    name = "legacy"
    target_slot: Optional[int] = None
    annotates = False

    def candidates(self, header: HeaderInfo) -> List[int]:
        slots = set()
        for ann in header.annotations:
            if ann.hardware:
                slots.update(s for s in ann.keyslots if s in header.slots)
        return sorted(slots)

    def reclaim(self, device: str, credential: Credential, header: HeaderInfo, dry_run: bool = False) -> List[int]:
        if not luks.test_open(device, credential):
            raise SafetyAbort("credential cannot unlock device", state=ERROR, device=device)
        removed: List[int] = []
        for slot in self.candidates(header):
            if slot == ORIGINAL_SLOT:
                _record(SafetyDecision(device, slot, HARDWARE_ANNOTATED, False, "original slot"))
                continue
            if credential_opens_slot(device, credential, slot):
                _record(SafetyDecision(device, slot, HARDWARE_ANNOTATED, False, "slot protected", credential_opens_slot=True))
                continue
            _record(SafetyDecision(device, slot, HARDWARE_ANNOTATED, True, "stale hardware slot", credential_opens_slot=False))
            try:
                luks.kill_slot(device, slot, credential, dry_run=dry_run)
            except SlotOperationFailed as exc:
                warn("safety.legacy_remove_failed", device=device, slot=slot, error=exc.reason)
                continue
            removed.append(slot)
        return removed


def strategy_for(header: HeaderInfo):
    return ReservedSlotStrategy() if header.version == V2 else LegacySlotStrategy()

"""cryptsetup primitives: unlock tests, slot add/kill, header backup, tokens."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import InspectionFailed, ProtectedSlotError, SlotOccupied, SlotOperationFailed
from .executil import run, trace
from .model import ORIGINAL_SLOT, Credential


def _auth(credential: Credential) -> Tuple[List[str], Optional[str]]:
    """Return the ``--key-file`` arguments and stdin payload for ``credential``.

    Passphrases always travel on stdin (``--key-file -`` reads to EOF, so no
    newline is appended); they never appear on a command line.
    """

    if credential.passphrase is not None:
        return ["--key-file", "-"], credential.passphrase
    if credential.keyfile:
        return ["--key-file", credential.keyfile], None
    raise ValueError("credential carries neither passphrase nor keyfile")


def _guard_slot(slot: Optional[int], action: str) -> None:
    if slot is not None and int(slot) == ORIGINAL_SLOT:
        trace("luks.guard.original_slot", action=action)
        raise ProtectedSlotError(f"refusing to {action} slot {ORIGINAL_SLOT} (original credential)")


def test_open(
    device: str,
    credential: Credential,
    slot: Optional[int] = None,
    header: Optional[str] = None,
) -> bool:
    """True when ``credential`` unlocks ``device`` (optionally only via ``slot``)."""

    args, stdin = _auth(credential)
    cmd = ["cryptsetup", "luksOpen", "--test-passphrase"]
    if slot is not None:
        cmd += ["--key-slot", str(slot)]
    if header:
        cmd += ["--header", header]
    cmd += args + [device]
    res = run(cmd, input=stdin)
    return res.rc == 0


def test_keyfile(device: str, keyfile: str, slot: Optional[int] = None) -> bool:
    return test_open(device, Credential(keyfile=keyfile), slot=slot)


_KEY_SLOT_CREATED_RE = re.compile(r"key\s*slot\s+(\d+)\s+created", re.IGNORECASE)
_SLOT_BUSY_RE = re.compile(r"(key\s*slot\s+\d+\s+is\s+(not\s+free|full|in\s+use))|already\s+in\s+use", re.IGNORECASE)


def _parse_slot_from_output(streams: Iterable[str]) -> int | None:
    for text in streams:
        if not text:
            continue
        match = _KEY_SLOT_CREATED_RE.search(text)
        if match:
            try:
                return int(match.group(1))
            except (TypeError, ValueError):
                return None
    return None


def add_key(
    device: str,
    new_keyfile: str,
    credential: Credential,
    slot: Optional[int] = None,
    dry_run: bool = False,
) -> Optional[int]:
    """Enrol ``new_keyfile`` into ``slot`` (or the first free slot when None).

    Returns the slot index reported by cryptsetup, or ``slot`` itself.
    """

    _guard_slot(slot, "add a key to")
    args, stdin = _auth(credential)
    cmd = ["cryptsetup", "luksAddKey", "--batch-mode"]
    if slot is not None:
        cmd += ["--key-slot", str(slot)]
    cmd += args + [device, new_keyfile]
    res = run(cmd, input=stdin, dry_run=dry_run)
    if res.rc != 0:
        combined = f"{(res.out or '').strip()}\n{(res.err or '').strip()}"
        if _SLOT_BUSY_RE.search(combined):
            raise SlotOccupied(f"slot {slot} on {device} is not free", device=device, slot=slot)
        raise SlotOperationFailed(
            f"cryptsetup luksAddKey failed on {device}: rc={res.rc}",
            device=device,
            slot=slot,
            stderr=(res.err or "").strip(),
        )
    if dry_run:
        return slot
    parsed = _parse_slot_from_output((res.out or "", res.err or ""))
    return slot if slot is not None else parsed


def kill_slot(device: str, slot: int, credential: Credential, dry_run: bool = False) -> None:
    _guard_slot(slot, "remove")
    args, stdin = _auth(credential)
    cmd = ["cryptsetup", "luksKillSlot", "--batch-mode"] + args + [device, str(slot)]
    res = run(cmd, input=stdin, dry_run=dry_run)
    if res.rc != 0:
        raise SlotOperationFailed(
            f"cryptsetup luksKillSlot {slot} failed on {device}: rc={res.rc}",
            device=device,
            slot=slot,
            stderr=(res.err or "").strip(),
        )


def header_backup(device: str, backup_file: str, dry_run: bool = False) -> bool:
    cmd = ["cryptsetup", "luksHeaderBackup", device, "--header-backup-file", backup_file]
    return run(cmd, dry_run=dry_run).rc == 0


def header_restore(device: str, backup_file: str, dry_run: bool = False) -> bool:
    cmd = ["cryptsetup", "luksHeaderRestore", "--batch-mode", device, "--header-backup-file", backup_file]
    return run(cmd, dry_run=dry_run).rc == 0


def dump_text(device: str) -> str:
    res = run(["cryptsetup", "luksDump", device])
    if res.rc != 0 or not (res.out or "").strip():
        raise InspectionFailed(f"cryptsetup luksDump failed on {device}: rc={res.rc}", device=device)
    return res.out


def dump_json(device: str) -> Dict[str, Any]:
    """LUKS2 metadata as exported by ``--dump-json-metadata``."""

    res = run(["cryptsetup", "luksDump", "--dump-json-metadata", device])
    if res.rc != 0:
        raise InspectionFailed(f"cryptsetup luksDump --dump-json-metadata failed on {device}: rc={res.rc}", device=device)
    try:
        payload = json.loads(res.out or "{}")
    except json.JSONDecodeError as exc:
        raise InspectionFailed(f"failed to parse LUKS2 metadata for {device}", device=device) from exc
    if not isinstance(payload, dict):
        raise InspectionFailed(f"unexpected LUKS2 metadata shape for {device}", device=device)
    return payload


def luks_uuid(device: str) -> str:
    res = run(["cryptsetup", "luksUUID", device])
    return (res.out or "").strip() if res.rc == 0 else ""


def token_import(device: str, token: Dict[str, Any], dry_run: bool = False) -> bool:
    res = run(["cryptsetup", "token", "import", device], input=json.dumps(token), dry_run=dry_run)
    return res.rc == 0


def token_export(device: str, token_id: int) -> Optional[Dict[str, Any]]:
    res = run(["cryptsetup", "token", "export", "--token-id", str(token_id), device])
    if res.rc != 0:
        return None
    try:
        payload = json.loads(res.out or "null")
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def token_remove(device: str, token_id: int, dry_run: bool = False) -> bool:
    res = run(["cryptsetup", "token", "remove", "--token-id", str(token_id), device], dry_run=dry_run)
    return res.rc == 0

"""Per-device processing and run orchestration.

One run walks every encrypted device in order:

1. the supplied credential must unlock the device,
2. the header is backed up into the run's work dir,
3. devices the derived key already opens are skipped untouched,
4. the header format picks a reclaim strategy (see ``safety``),
5. the derived key is installed (two attempts) and verified,
6. LUKS2 headers get an annotation token for the new slot.

Device failures are recorded and the run moves on to the next device. The
work dir holding the derived key file and header backups is removed when the
run ends, whatever the outcome.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import time
from typing import Callable, Iterable, List, Optional

from . import archive, inspector, luks
from .errors import (
    ArchiveFailed,
    AutoUnlockError,
    BackupFailed,
    CredentialInvalid,
    HardwareUnavailable,
    InspectionFailed,
    NoEncryptedDevices,
    SlotOccupied,
    SlotOperationFailed,
)
from .executil import info, trace, warn
from .fingerprint import read_fingerprint
from .model import (
    ANNOTATION_TYPE,
    ANNOTATION_VERSION,
    RESERVED_SLOT,
    V2,
    Credential,
    DeviceOutcome,
    HeaderInfo,
    RunOptions,
    RunReport,
)
from .safety import strategy_for

KEY_FILE_NAME = "hardware_tied.key"
INSTALL_ATTEMPTS = 2
WORK_DIR_PREFIX = "luks_mgt_temp_"


def write_key_file(directory: str, key: str) -> str:
    path = os.path.join(directory, KEY_FILE_NAME)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(key)
    return path


def annotation_token(slot: int, generation_time: str) -> dict:
    return {
        "type": ANNOTATION_TYPE,
        "keyslots": [str(slot)],
        "version": ANNOTATION_VERSION,
        "metadata": {"generation_time": generation_time},
    }


def _drop_stale_annotations(header: HeaderInfo, dry_run: bool) -> List[int]:
    """Remove our tokens pointing at the (now free) reserved slot or at nothing."""

    dropped = []
    for ann in inspector.orphan_annotations(header):
        if luks.token_remove(header.device, ann.token_id, dry_run=dry_run):
            dropped.append(ann.token_id)
        else:
            warn("pipeline.token_remove_failed", device=header.device, token=ann.token_id)
    if dropped:
        trace("pipeline.tokens_dropped", device=header.device, tokens=dropped, dry_run=dry_run)
    return dropped


def _locate_new_slot(device: str, key_file: str, before: set) -> Optional[int]:
    try:
        after = inspector.occupied_slots(device)
    except AutoUnlockError:
        return None
    for slot in sorted(after - before):
        if luks.test_keyfile(device, key_file, slot=slot):
            return slot
    return None


def _install(device: str, key_file: str, credential: Credential, target: Optional[int]) -> Optional[int]:
    where = f"slot {target}" if target is not None else "a free slot"
    for attempt in range(1, INSTALL_ATTEMPTS + 1):
        try:
            return luks.add_key(device, key_file, credential, slot=target)
        except SlotOccupied as exc:
            raise SlotOccupied(
                f"{where} occupied (safety validation should have prevented this)",
                device=device,
                slot=target,
            ) from exc
        except SlotOperationFailed as exc:
            warn("pipeline.install_attempt_failed", device=device, attempt=attempt, error=exc.reason)
    raise SlotOperationFailed(
        f"failed to add hardware key to {where} after {INSTALL_ATTEMPTS} attempts",
        device=device,
        slot=target,
    )


def _rollback(device: str, slot: Optional[int], credential: Credential) -> None:
    if slot is None:
        warn("pipeline.rollback_skipped", device=device, reason="slot unknown")
        return
    try:
        luks.kill_slot(device, slot, credential)
        info("pipeline.rollback", device=device, slot=slot)
    except AutoUnlockError as exc:
        warn("pipeline.rollback_failed", device=device, slot=slot, error=exc.reason)


def _process(
    outcome: DeviceOutcome,
    credential: Credential,
    key_file: Optional[str],
    backup_dir: str,
    options: RunOptions,
    key_error: Optional[str],
    generation_time: str,
) -> None:
    device = outcome.device

    if not luks.test_open(device, credential):
        raise CredentialInvalid(f"invalid {credential.kind}", device=device)

    header = inspector.read_header(device)
    if not header.uuid:
        raise BackupFailed("cannot determine header UUID", device=device)
    backup = os.path.join(backup_dir, archive.backup_name(header.uuid, device))
    if options.dry_run:
        outcome.notes.append("dry run: header backup skipped")
    elif not luks.header_backup(device, backup):
        raise BackupFailed("header backup failed", device=device)
    outcome.backup = backup

    if options.headers_only:
        outcome.status = "backed_up"
        return
    if key_file is None:
        raise HardwareUnavailable(key_error or "hardware key unavailable", device=device)

    if luks.test_keyfile(device, key_file):
        outcome.status = "skipped"
        return

    strategy = strategy_for(header)
    outcome.removed_slots = strategy.reclaim(device, credential, header, dry_run=options.dry_run)
    if strategy.target_slot == RESERVED_SLOT:
        if RESERVED_SLOT in outcome.removed_slots:
            header.slots.discard(RESERVED_SLOT)
        _drop_stale_annotations(header, options.dry_run)

    if options.dry_run:
        target = strategy.target_slot
        where = f"slot {target}" if target is not None else "a free slot"
        outcome.notes.append(f"dry run: would install hardware key into {where}")
        outcome.slot = target
        outcome.status = "added"
        return

    before = set(header.slots) - set(outcome.removed_slots)
    slot = _install(device, key_file, credential, strategy.target_slot)
    if slot is None:
        slot = _locate_new_slot(device, key_file, before)
    verified = luks.test_keyfile(device, key_file, slot=slot) if slot is not None else luks.test_keyfile(device, key_file)
    if not verified:
        _rollback(device, slot, credential)
        raise SlotOperationFailed("install verification failed", device=device, slot=slot)
    outcome.slot = slot

    if header.version == V2 and slot is not None:
        if not luks.token_import(device, annotation_token(slot, generation_time)):
            warn("pipeline.annotation_failed", device=device, slot=slot)
            outcome.notes.append("annotation could not be written")
    outcome.status = "added"


def process_device(
    device: str,
    credential: Credential,
    key_file: Optional[str],
    backup_dir: str,
    options: Optional[RunOptions] = None,
    key_error: Optional[str] = None,
    generation_time: str = "",
) -> DeviceOutcome:
    outcome = DeviceOutcome(device=device)
    options = options or RunOptions()
    try:
        _process(outcome, credential, key_file, backup_dir, options, key_error, generation_time)
    except AutoUnlockError as exc:
        outcome.status = "failed"
        outcome.reason = exc.reason
        warn("pipeline.device_failed", device=device, reason=exc.reason, error=type(exc).__name__)
    else:
        info("pipeline.device_done", device=device, status=outcome.status, slot=outcome.slot, dry_run=options.dry_run)
    return outcome


def _describe(outcome: DeviceOutcome) -> str:
    if outcome.status == "failed":
        return f"  {outcome.device}: failed ({outcome.reason})"
    if outcome.status == "added" and outcome.slot is not None:
        return f"  {outcome.device}: added (slot {outcome.slot})"
    return f"  {outcome.device}: {outcome.status}"


def _discover(devices: Optional[Iterable[str]]) -> List[str]:
    found = inspector.list_encrypted_devices() if devices is None else list(devices)
    if not found:
        raise NoEncryptedDevices("no encrypted devices found")
    return found


def _archive(
    report: RunReport,
    credential: Credential,
    devices: List[str],
    options: RunOptions,
    archive_pass: Optional[str],
    work_dir: str,
    timestamp: str,
    emit: Callable[[str], None],
) -> None:
    backups = [o.backup for o in report.outcomes if o.backup]
    if not backups:
        return
    if options.dry_run:
        emit(f"[DRY RUN] archive with {len(backups)} header backup(s) would be created")
        return
    backups = [b for b in backups if os.path.isfile(b)]
    try:
        password = archive.archive_password(credential, archive_pass)
        report_file = os.path.join(work_dir, archive.report_name(timestamp))
        if options.headers_only:
            text = archive.render_backup_info(report.generated_at or "", backups, credential)
        else:
            analysis = archive.render_slot_analysis(devices, credential)
            text = archive.render_key_report(report.generated_at or "", report.fingerprint, analysis, report.key_error)
        archive.write_text(report_file, text)
        report.archive = archive.build_archive(backups + [report_file], password, timestamp, options.download_mode, emit=emit)
        emit("Archive created with password protection")
    except (ArchiveFailed, OSError) as exc:
        reason = exc.reason if isinstance(exc, ArchiveFailed) else str(exc)
        report.archive_error = reason
        warn("pipeline.archive_failed", error=reason)
        emit(f"Warning: failed to create encrypted archive ({reason})")


def run_pipeline(
    credential: Credential,
    options: Optional[RunOptions] = None,
    archive_pass: Optional[str] = None,
    devices: Optional[Iterable[str]] = None,
    emit: Callable[[str], None] = print,
) -> RunReport:
    options = options or RunOptions()
    report = RunReport(generated_at=time.strftime("%Y-%m-%d %H:%M:%S %Z"))
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    work_dir = tempfile.mkdtemp(prefix=WORK_DIR_PREFIX)
    info("pipeline.start", dry_run=options.dry_run, download_mode=options.download_mode, headers_only=options.headers_only)
    try:
        key_file = None
        if not options.headers_only:
            try:
                report.fingerprint = read_fingerprint()
                key_file = write_key_file(work_dir, report.fingerprint.derive())
            except HardwareUnavailable as exc:
                report.key_error = exc.reason
                warn("pipeline.hardware_unavailable", reason=exc.reason)
                emit(f"Error: {exc.reason}")

        try:
            found = _discover(devices)
        except (NoEncryptedDevices, InspectionFailed) as exc:
            report.run_error = exc.reason
            emit(exc.reason)
            return report

        backup_dir = os.path.join(work_dir, "headers")
        os.makedirs(backup_dir, mode=0o700, exist_ok=True)
        emit(f"Processing {len(found)} encrypted device(s)...")
        for device in found:
            outcome = process_device(
                device,
                credential,
                key_file,
                backup_dir,
                options,
                key_error=report.key_error,
                generation_time=report.generated_at or "",
            )
            report.outcomes.append(outcome)
            emit(_describe(outcome))

        _archive(report, credential, found, options, archive_pass, work_dir, timestamp, emit)
        info(
            "pipeline.done",
            added=len(report.added),
            skipped=len(report.skipped),
            backed_up=len(report.backed_up),
            failed=len(report.failed),
            archive=report.archive,
        )
        return report
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

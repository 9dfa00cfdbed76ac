from __future__ import annotations

# Archive builder: analysis report + header backups in one encrypted zip
import os
import re
from typing import Dict, Iterable, List, Optional, Sequence

from . import inspector, luks
from .errors import ArchiveFailed, AutoUnlockError
from .executil import info, run, trace, warn
from .model import ORIGINAL_SLOT, Credential, HardwareFingerprint, HeaderInfo
from .paths import archive_dir, download_dir

DOWNLOAD_SENTINEL = "DOWNLOAD_READY:"
SLOTS_WARNING = 25
SLOTS_CRITICAL = 29

_DOWNLOAD_NAME_RE = re.compile(r"^luksheaders_[0-9A-Za-z_]+\.zip$")
_RULE = "=" * 47


def archive_password(credential: Credential, explicit: Optional[str] = None) -> str:
    """Passphrase credentials protect the archive themselves; keyfiles need ``explicit``."""

    if credential.passphrase is not None:
        return credential.passphrase
    if explicit:
        return explicit
    raise ArchiveFailed("archive password required when authenticating with a keyfile")


def backup_name(uuid: str, device: str) -> str:
    return f"HEADER_UUID_{uuid}_DEVICE_{os.path.basename(device)}.img"


def archive_name(timestamp: str) -> str:
    return f"luksheaders_{timestamp}.zip"


def report_name(timestamp: str) -> str:
    return f"luks_system_analysis_{timestamp}.txt"


def archive_path(timestamp: str, download_mode: bool = False) -> str:
    directory = download_dir() if download_mode else archive_dir()
    return os.path.join(directory, archive_name(timestamp))


# -- slot analysis ---------------------------------------------------------


def slot_health(used: int, total: int = 32) -> str:
    if used >= SLOTS_CRITICAL:
        return f"CRITICAL: {used}/{total} slots used (90%+ full)"
    if used >= SLOTS_WARNING:
        return f"WARNING: {used}/{total} slots used (80%+ full)"
    return f"Healthy: {used}/{total} slots used"


def describe_slot(header: HeaderInfo, slot: int) -> str:
    if slot == ORIGINAL_SLOT:
        return "Original encryption key"
    found = inspector.annotations_for(header, slot)
    if not found:
        return "Standard slot"
    ann = found[0]
    if ann.hardware:
        return f"Hardware-derived ({ann.generation_time})" if ann.generation_time else "Hardware-derived"
    return f"Token present ({ann.type or 'unknown'})"


_KIND_LABEL = {"array": "Array Device", "pool": "Pool Device", "standalone": "Standalone Device"}


def render_slot_analysis(devices: Sequence[str], credential: Credential) -> str:
    """Group devices sharing one slot layout and describe each layout once.

    Devices the credential cannot open are listed separately and not inspected.
    """

    groups: Dict[tuple, List[HeaderInfo]] = {}
    locked: List[str] = []
    unreadable: List[str] = []
    for device in devices:
        if not luks.test_open(device, credential):
            locked.append(device)
            continue
        try:
            header = inspector.read_header(device)
        except AutoUnlockError as exc:
            trace("archive.analysis_skip", device=device, error=exc.reason)
            unreadable.append(device)
            continue
        groups.setdefault((header.version, tuple(sorted(header.slots))), []).append(header)

    kinds = {c["device"]: c["kind"] for c in inspector.classify_devices(devices)} if devices else {}
    lines = [f"Found {len(devices)} LUKS encrypted device(s)", ""]
    for (version, slots), headers in groups.items():
        first = headers[0]
        label = _KIND_LABEL.get(kinds.get(first.device, "standalone"), "Standalone Device")
        names = " ".join(h.device for h in headers)
        if len(headers) > 1:
            lines.append(f"{label}s ({len(headers)} devices):")
            lines.append(f"    Devices: {names}")
        else:
            lines.append(f"{label} (1 device):")
            lines.append(f"    Device: {names}")
        lines.append(f"    LUKS Version: {version}")
        lines.append(f"    Slot Usage: {slot_health(len(slots), first.slot_count)}")
        lines.append("    Slot Configuration:")
        for slot in slots:
            lines.append(f"    ├─ Slot {slot}: {describe_slot(first, slot)}")
        lines.append("")
    for device in locked:
        lines.append(f"{device}: {credential.kind.capitalize()} invalid for this device")
    for device in unreadable:
        lines.append(f"{device}: header could not be read")
    return "\n".join(lines).rstrip() + "\n"


# -- report files ----------------------------------------------------------


def render_key_report(
    generated_at: str,
    fingerprint: Optional[HardwareFingerprint],
    analysis: str = "",
    key_error: Optional[str] = None,
) -> str:
    parts = [
        _RULE,
        "LUKS Hardware-Derived Key & Encryption Analysis",
        _RULE,
        "",
        f"Generated: {generated_at}",
        "",
    ]
    if fingerprint is not None:
        key = fingerprint.derive()
        parts += [
            "HARDWARE IDENTIFIERS:",
            f"- Motherboard Serial: {fingerprint.serial}",
            f"- Gateway MAC Address: {fingerprint.mac}",
            "",
            "DERIVED KEY:",
            key,
            "",
            "KEY GENERATION METHOD:",
            "The hardware key is the SHA256 hash of the motherboard serial number",
            "and the default gateway MAC address joined by an underscore:",
            f"  Input: {fingerprint.serial}_{fingerprint.mac}",
            f"  SHA256: {key}",
            "",
            "SECURITY NOTES:",
            "- This key is tied to this specific hardware configuration",
            "- Replacing the motherboard or the router invalidates it",
            "- Keep this file alongside the LUKS header backups",
            "- The original LUKS passphrase remains valid and must be kept safe",
            "",
        ]
    else:
        parts += ["HARDWARE IDENTIFIERS:", f"- unavailable: {key_error or 'not collected'}", ""]
    parts += ["CURRENT ENCRYPTION ANALYSIS:", "", analysis.rstrip(), "", _RULE]
    return "\n".join(parts) + "\n"


def render_backup_info(generated_at: str, backups: Sequence[str], credential: Credential) -> str:
    lines = [
        _RULE,
        "LUKS Header Backup",
        _RULE,
        "",
        f"Generated: {generated_at}",
        f"Headers: {len(backups)}",
        "",
    ]
    lines += [f"- {os.path.basename(b)}" for b in backups]
    lines += [
        "",
        "Restore a header with:",
        "  cryptsetup luksHeaderRestore <device> --header-backup-file <file>",
        "",
        f"Archive protected with the {'LUKS passphrase' if credential.passphrase is not None else 'archive password supplied at backup time'}.",
    ]
    return "\n".join(lines) + "\n"


def write_text(path: str, text: str) -> str:
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text)
    os.chmod(path, 0o600)
    return path


# -- archive ---------------------------------------------------------------


def build_archive(
    files: Iterable[str],
    password: str,
    timestamp: str,
    download_mode: bool = False,
    emit=print,
) -> str:
    """Zip ``files`` flat into the timestamped archive; return its path."""

    members = [f for f in files if f and os.path.isfile(f)]
    if not members:
        raise ArchiveFailed("no files to archive")
    out_path = archive_path(timestamp, download_mode)
    try:
        os.makedirs(os.path.dirname(out_path), exist_ok=True)
    except OSError as exc:
        raise ArchiveFailed(f"cannot create archive directory: {exc}") from exc
    cmd = ["zip", "-j", "-q", "-P", password, out_path] + members
    res = run(cmd, secret_args=(4,))
    if res.rc != 0 or not os.path.isfile(out_path):
        raise ArchiveFailed(f"zip failed: rc={res.rc}", stderr=(res.err or "").strip())
    info("archive.created", path=out_path, members=len(members), download_mode=download_mode)
    if download_mode:
        emit(f"{DOWNLOAD_SENTINEL} {out_path}")
    return out_path


def remove_download(filename: str) -> List[str]:
    """Delete a downloaded archive, then the download dir once empty.

    Only bare ``luksheaders_*.zip`` names are accepted.
    """

    if not filename or "/" in filename or ".." in filename or not _DOWNLOAD_NAME_RE.match(filename):
        raise ArchiveFailed(f"invalid download filename: {filename!r}")
    cleaned: List[str] = []
    directory = download_dir()
    target = os.path.join(directory, filename)
    if os.path.isfile(target):
        os.remove(target)
        cleaned.append("archive")
    if os.path.isdir(directory) and not os.listdir(directory):
        try:
            os.rmdir(directory)
            cleaned.append("download directory")
        except OSError as exc:
            warn("archive.rmdir_failed", path=directory, error=str(exc))
    trace("archive.download_removed", filename=filename, cleaned=cleaned)
    return cleaned

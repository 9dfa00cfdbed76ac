"""CLI entrypoint for hardware-derived LUKS auto-unlock."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, Optional

from . import archive, hooks, readiness
from .config import ConfigStore
from .controller import AutoUnlockController
from .errors import ArchiveFailed, AutoUnlockError, CredentialInvalid, HardwareUnavailable
from .executil import log, resolve_log_path
from .model import Credential, RunOptions, RunReport
from .pipeline import run_pipeline

RESULT_CODES: Dict[str, int] = {
    "RUN_OK": 0,
    "STATUS_OK": 0,
    "HOOK_OK": 0,
    "CLEANUP_OK": 0,
    "FAIL_CREDENTIAL_INPUT": 2,
    "RUN_PARTIAL": 3,
    "FAIL_NO_DEVICES": 4,
    "FAIL_ALL_DEVICES": 5,
    "FAIL_HARDWARE": 6,
    "FAIL_ARCHIVE": 7,
    "FAIL_HOOKS": 8,
    "FAIL_UNHANDLED": 12,
}

MAX_KEYFILE_BYTES = 8 * 1024 * 1024
MAX_PASSPHRASE_CHARS = 512


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
    log("INFO" if kind.endswith("_OK") else "ERROR", "cli.result", **payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _read_keyfile_credential(path: str) -> Credential:
    normalized = os.path.abspath(os.path.expanduser(path))
    if not os.path.isfile(normalized):
        raise CredentialInvalid(f"keyfile not found at {normalized}")
    if not os.access(normalized, os.R_OK):
        raise CredentialInvalid(f"keyfile not readable at {normalized}")
    size = os.path.getsize(normalized)
    if size == 0:
        raise CredentialInvalid("keyfile is empty")
    if size > MAX_KEYFILE_BYTES:
        raise CredentialInvalid("keyfile exceeds 8 MiB")
    return Credential(keyfile=normalized)


def _read_passphrase_file(path: str) -> str:
    normalized = os.path.abspath(os.path.expanduser(path))
    if not os.path.isfile(normalized):
        raise CredentialInvalid(f"passphrase file not found at {normalized}")
    with open(normalized, "r", encoding="utf-8") as fh:
        return fh.read().rstrip("\r\n")


def resolve_credential(args: argparse.Namespace, environ=None) -> Credential:
    """``--keyfile``/``--passphrase-file`` first, then LUKS_PASSPHRASE, then LUKS_KEYFILE."""

    environ = os.environ if environ is None else environ
    if getattr(args, "keyfile", None):
        return _read_keyfile_credential(args.keyfile)
    passphrase = None
    if getattr(args, "passphrase_file", None):
        passphrase = _read_passphrase_file(args.passphrase_file)
    elif environ.get("LUKS_PASSPHRASE"):
        passphrase = environ["LUKS_PASSPHRASE"]
    elif environ.get("LUKS_KEYFILE"):
        return _read_keyfile_credential(environ["LUKS_KEYFILE"])
    if not passphrase:
        raise CredentialInvalid("no encryption key provided (LUKS_PASSPHRASE, --passphrase-file or --keyfile)")
    if len(passphrase) > MAX_PASSPHRASE_CHARS:
        raise CredentialInvalid(f"passphrase exceeds {MAX_PASSPHRASE_CHARS} characters")
    return Credential(passphrase=passphrase)


def _result_kind(report: RunReport, options: RunOptions) -> str:
    if report.run_error:
        return "FAIL_NO_DEVICES"
    if not report.succeeded:
        if report.key_error and not options.headers_only:
            return "FAIL_HARDWARE"
        return "FAIL_ALL_DEVICES"
    if report.archive_error:
        return "FAIL_ARCHIVE"
    if report.failed:
        return "RUN_PARTIAL"
    return "RUN_OK"


def _cmd_setup(args: argparse.Namespace, headers_only: bool = False) -> int:
    options = RunOptions(
        dry_run=getattr(args, "dry_run", False),
        download_mode=args.download_mode,
        headers_only=headers_only or getattr(args, "headers_only", False),
    )
    try:
        credential = resolve_credential(args)
    except CredentialInvalid as exc:
        _emit_result("FAIL_CREDENTIAL_INPUT", extra={"reason": exc.reason})
    archive_pass = args.archive_password or os.environ.get("LUKS_ZIP_PASSWORD") or None
    if credential.keyfile and not archive_pass and not options.dry_run:
        _emit_result(
            "FAIL_CREDENTIAL_INPUT",
            extra={"reason": "archive password required when authenticating with a keyfile"},
        )
    report = run_pipeline(credential, options, archive_pass=archive_pass)
    payload = report.as_dict()
    payload.update({"dry_run": options.dry_run, "headers_only": options.headers_only})
    _emit_result(_result_kind(report, options), extra=payload)
    return 0


def _cmd_enable(args: argparse.Namespace) -> int:
    ctl = AutoUnlockController(ConfigStore())
    try:
        result = ctl.enable()
    except (AutoUnlockError, OSError) as exc:
        reason = exc.reason if isinstance(exc, AutoUnlockError) else str(exc)
        _emit_result("FAIL_HOOKS", extra={"reason": reason})
    _emit_result("STATUS_OK", extra=result)
    return 0


def _cmd_disable(args: argparse.Namespace) -> int:
    ctl = AutoUnlockController(ConfigStore())
    try:
        result = ctl.disable()
    except OSError as exc:
        _emit_result("FAIL_HOOKS", extra={"reason": str(exc)})
    _emit_result("STATUS_OK", extra=result)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    _emit_result("STATUS_OK", extra=AutoUnlockController(ConfigStore()).status())
    return 0


def _cmd_get_status(args: argparse.Namespace) -> int:
    print(AutoUnlockController(ConfigStore()).hooks_status())
    return 0


def _cmd_system_state(args: argparse.Namespace) -> int:
    print(readiness.system_state(ConfigStore()))
    return 0


def _print_bool(value: bool) -> int:
    print("true" if value else "false")
    return 0


def _cmd_fetch_key(args: argparse.Namespace) -> int:
    try:
        result = hooks.fetch_key()
    except HardwareUnavailable as exc:
        _emit_result("FAIL_HARDWARE", extra={"reason": exc.reason})
    _emit_result("HOOK_OK", extra=result)
    return 0


def _cmd_clear_key(args: argparse.Namespace) -> int:
    _emit_result("HOOK_OK", extra=hooks.clear_key())
    return 0


def _cmd_cleanup_download(args: argparse.Namespace) -> int:
    try:
        cleaned = archive.remove_download(args.filename)
    except ArchiveFailed as exc:
        _emit_result("FAIL_ARCHIVE", extra={"reason": exc.reason})
    _emit_result("CLEANUP_OK", extra={"cleaned": cleaned})
    return 0


def _add_credential_options(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--passphrase-file", default=None)
    sub.add_argument("--keyfile", default=None)
    sub.add_argument("--archive-password", default=None)
    sub.add_argument("--download-mode", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autounlock", add_help=True)
    subs = parser.add_subparsers(dest="command", required=True)

    setup = subs.add_parser("setup")
    _add_credential_options(setup)
    setup.add_argument("--dry-run", action="store_true")
    setup.add_argument("--headers-only", action="store_true")
    setup.set_defaults(func=_cmd_setup)

    backup = subs.add_parser("backup-headers")
    _add_credential_options(backup)
    backup.set_defaults(func=lambda a: _cmd_setup(a, headers_only=True))

    subs.add_parser("enable").set_defaults(func=_cmd_enable)
    subs.add_parser("disable").set_defaults(func=_cmd_disable)
    subs.add_parser("status").set_defaults(func=_cmd_status)
    subs.add_parser("get-status").set_defaults(func=_cmd_get_status)
    subs.add_parser("system-state").set_defaults(func=_cmd_system_state)
    subs.add_parser("unlockable-devices").set_defaults(func=lambda a: print(readiness.unlockable_devices()) or 0)
    subs.add_parser("check-keys-exist").set_defaults(func=lambda a: _print_bool(readiness.keys_exist()))
    subs.add_parser("test-keys-work").set_defaults(func=lambda a: _print_bool(readiness.keys_work()))
    subs.add_parser("check-array-status").set_defaults(func=lambda a: _print_bool(readiness.array_running()))
    subs.add_parser("fetch-key").set_defaults(func=_cmd_fetch_key)
    subs.add_parser("clear-key").set_defaults(func=_cmd_clear_key)

    cleanup = subs.add_parser("cleanup-download")
    cleanup.add_argument("filename")
    cleanup.set_defaults(func=_cmd_cleanup_download)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc), "command": args.command})
    return 0


if __name__ == "__main__":
    sys.exit(main())

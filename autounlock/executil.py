from __future__ import annotations

"""Subprocess wrapper, dry-run hook and JSONL trace logging."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "autounlock.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/luks-autounlock",
        "/tmp/luks-autounlock-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("AUTOUNLOCK_LOG_LEVEL", "INFO").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def _masked(cmd: Sequence[str], secret_args: Sequence[int]) -> list[str]:
    shown = list(cmd)
    for idx in secret_args:
        if 0 <= idx < len(shown):
            shown[idx] = "***"
    return shown


def run(
    cmd: Sequence[str],
    check: bool = False,
    dry_run: bool = False,
    timeout: float | None = None,
    input: str | None = None,
    env: dict | None = None,
    secret_args: Sequence[int] = (),
) -> Result:
    """Run ``cmd`` and capture its output.

    ``input`` is fed on stdin and never logged. Positions listed in
    ``secret_args`` are masked in the trace log. A ``timeout`` expiry is
    reported as rc 124, the same code coreutils ``timeout`` uses, so callers
    only ever have to look at ``rc``.
    """

    shown = _masked(cmd, secret_args)
    trace("exec.start", cmd=shown, dry_run=dry_run)
    started = time.time()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in shown)
        return Result(0, text, "", 0.0)
    try:
        proc = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input,
            env=env,
        )
    except subprocess.TimeoutExpired:
        dur = time.time() - started
        trace("exec.timeout", cmd=shown, timeout=timeout, dur=dur)
        if check:
            raise
        return Result(124, "", f"timed out after {timeout}s", dur)
    except FileNotFoundError as exc:
        dur = time.time() - started
        trace("exec.missing", cmd=shown, error=str(exc))
        if check:
            raise
        return Result(127, "", str(exc), dur)
    dur = time.time() - started
    trace("exec.done", cmd=shown, rc=proc.returncode, dur=dur)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, shown, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)

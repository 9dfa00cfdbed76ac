import stat

import pytest

from autounlock import hooks
from autounlock.errors import HardwareUnavailable
from conftest import FINGERPRINT


def _disk_cfg(host_root, text):
    path = host_root / "boot" / "config" / "disk.cfg"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_read_disk_cfg_strips_quotes(host_root):
    _disk_cfg(host_root, 'startArray="yes"\r\n# comment\nluksKeyfile="/root/other.key"\n')
    cfg = hooks.read_disk_cfg()
    assert cfg == {"startArray": "yes", "luksKeyfile": "/root/other.key"}
    assert hooks.auto_start_enabled(cfg)
    assert hooks.keyfile_location(cfg) == "/root/other.key"


def test_keyfile_defaults_without_cfg(host_root):
    assert hooks.read_disk_cfg() == {}
    assert hooks.keyfile_location() == str(host_root / "root" / "keyfile")
    assert not hooks.auto_start_enabled()


def test_fetch_key_writes_private_keyfile(host_root, monkeypatch):
    monkeypatch.setattr(hooks, "read_fingerprint", lambda: FINGERPRINT)
    _disk_cfg(host_root, 'startArray="yes"\n')

    result = hooks.fetch_key()

    keyfile = host_root / "root" / "keyfile"
    assert result == {"written": True, "path": str(keyfile), "reason": None}
    assert keyfile.read_text(encoding="utf-8") == FINGERPRINT.derive()
    assert stat.S_IMODE(keyfile.stat().st_mode) == 0o600


def test_fetch_key_respects_auto_start(host_root, monkeypatch):
    def forbidden():
        raise AssertionError("fingerprint must not be read")

    monkeypatch.setattr(hooks, "read_fingerprint", forbidden)
    _disk_cfg(host_root, 'startArray="no"\n')

    result = hooks.fetch_key()

    assert result["written"] is False
    assert not (host_root / "root" / "keyfile").exists()


def test_fetch_key_propagates_hardware_error(host_root, monkeypatch):
    def broken():
        raise HardwareUnavailable("cannot detect hardware fingerprint: missing gateway MAC address")

    monkeypatch.setattr(hooks, "read_fingerprint", broken)
    _disk_cfg(host_root, 'startArray="yes"\n')
    with pytest.raises(HardwareUnavailable):
        hooks.fetch_key()


def test_clear_key_truncates(host_root):
    keyfile = host_root / "root" / "keyfile"
    keyfile.parent.mkdir(parents=True)
    keyfile.write_text("secret", encoding="utf-8")

    assert hooks.clear_key() == {"cleared": True, "path": str(keyfile)}
    assert keyfile.exists()
    assert keyfile.read_text(encoding="utf-8") == ""


def test_clear_key_missing_file(host_root):
    assert hooks.clear_key()["cleared"] is False

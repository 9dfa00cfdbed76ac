from types import SimpleNamespace

import pytest

from autounlock import luks
from autounlock.errors import InspectionFailed, ProtectedSlotError, SlotOccupied, SlotOperationFailed
from autounlock.model import Credential


class RunRecorder:
    def __init__(self, result=None):
        self.calls = []
        self.result = result or SimpleNamespace(rc=0, out="", err="")

    def __call__(self, cmd, **kwargs):
        self.calls.append((list(cmd), kwargs))
        return self.result


def test_passphrase_goes_through_stdin(monkeypatch):
    rec = RunRecorder()
    monkeypatch.setattr(luks, "run", rec)

    assert luks.test_open("/dev/mapper/md1", Credential(passphrase="s3cret"), slot=31)

    cmd, kwargs = rec.calls[0]
    assert cmd[:3] == ["cryptsetup", "luksOpen", "--test-passphrase"]
    assert cmd[cmd.index("--key-slot") + 1] == "31"
    assert cmd[cmd.index("--key-file") + 1] == "-"
    assert "s3cret" not in cmd
    assert kwargs["input"] == "s3cret"


def test_keyfile_credential_uses_path(monkeypatch):
    rec = RunRecorder(SimpleNamespace(rc=2, out="", err=""))
    monkeypatch.setattr(luks, "run", rec)

    assert not luks.test_keyfile("/dev/sdb1", "/tmp/k.key")

    cmd, kwargs = rec.calls[0]
    assert cmd[cmd.index("--key-file") + 1] == "/tmp/k.key"
    assert kwargs["input"] is None
    assert "--key-slot" not in cmd


@pytest.mark.parametrize("call", ["add", "kill"])
def test_slot_zero_is_refused_before_any_command(monkeypatch, call):
    rec = RunRecorder()
    monkeypatch.setattr(luks, "run", rec)
    cred = Credential(passphrase="pw")
    with pytest.raises(ProtectedSlotError):
        if call == "add":
            luks.add_key("/dev/sdb1", "/tmp/k", cred, slot=0)
        else:
            luks.kill_slot("/dev/sdb1", 0, cred)
    assert rec.calls == []


def test_add_key_reports_created_slot(monkeypatch):
    rec = RunRecorder(SimpleNamespace(rc=0, out="Key slot 3 created.\n", err=""))
    monkeypatch.setattr(luks, "run", rec)

    assert luks.add_key("/dev/sdb1", "/tmp/new.key", Credential(keyfile="/root/old.key")) == 3
    cmd, _ = rec.calls[0]
    assert cmd[-2:] == ["/dev/sdb1", "/tmp/new.key"]


def test_add_key_occupied_slot_is_distinct(monkeypatch):
    rec = RunRecorder(SimpleNamespace(rc=1, out="", err="Keyslot 31 is not free.\n"))
    monkeypatch.setattr(luks, "run", rec)
    with pytest.raises(SlotOccupied):
        luks.add_key("/dev/sdb1", "/tmp/new.key", Credential(passphrase="pw"), slot=31)


def test_add_key_generic_failure(monkeypatch):
    rec = RunRecorder(SimpleNamespace(rc=1, out="", err="Device or resource busy"))
    monkeypatch.setattr(luks, "run", rec)
    with pytest.raises(SlotOperationFailed) as info:
        luks.add_key("/dev/sdb1", "/tmp/new.key", Credential(passphrase="pw"), slot=31)
    assert not isinstance(info.value, SlotOccupied)


def test_kill_slot_dry_run_is_forwarded(monkeypatch):
    rec = RunRecorder()
    monkeypatch.setattr(luks, "run", rec)
    luks.kill_slot("/dev/sdb1", 31, Credential(passphrase="pw"), dry_run=True)
    cmd, kwargs = rec.calls[0]
    assert cmd[1] == "luksKillSlot"
    assert cmd[-1] == "31"
    assert kwargs["dry_run"] is True


def test_header_backup_and_restore(monkeypatch):
    rec = RunRecorder()
    monkeypatch.setattr(luks, "run", rec)
    assert luks.header_backup("/dev/sdb1", "/tmp/h.img")
    assert luks.header_restore("/dev/sdb1", "/tmp/h.img")
    assert rec.calls[0][0] == ["cryptsetup", "luksHeaderBackup", "/dev/sdb1", "--header-backup-file", "/tmp/h.img"]
    assert rec.calls[1][0][:3] == ["cryptsetup", "luksHeaderRestore", "--batch-mode"]


def test_dump_json_rejects_garbage(monkeypatch):
    monkeypatch.setattr(luks, "run", RunRecorder(SimpleNamespace(rc=0, out="not json", err="")))
    with pytest.raises(InspectionFailed):
        luks.dump_json("/dev/sdb1")


def test_token_roundtrip_commands(monkeypatch):
    rec = RunRecorder(SimpleNamespace(rc=0, out='{"type": "hardware-derived", "keyslots": ["31"]}', err=""))
    monkeypatch.setattr(luks, "run", rec)

    assert luks.token_import("/dev/sdb1", {"type": "hardware-derived", "keyslots": ["31"]})
    assert luks.token_export("/dev/sdb1", 2) == {"type": "hardware-derived", "keyslots": ["31"]}
    assert luks.token_remove("/dev/sdb1", 2)

    import_cmd, import_kw = rec.calls[0]
    assert import_cmd == ["cryptsetup", "token", "import", "/dev/sdb1"]
    assert '"keyslots": ["31"]' in import_kw["input"]
    assert rec.calls[2][0] == ["cryptsetup", "token", "remove", "--token-id", "2", "/dev/sdb1"]

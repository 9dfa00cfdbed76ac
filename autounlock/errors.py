"""Error taxonomy for key derivation, slot safety and run bookkeeping."""

from __future__ import annotations


class AutoUnlockError(RuntimeError):
    """Base class; ``reason`` is the human-readable text surfaced to operators."""

    def __init__(self, reason: str, **details):
        super().__init__(reason)
        self.reason = reason
        self.details = details


class HardwareUnavailable(AutoUnlockError):
    pass


class CredentialInvalid(AutoUnlockError):
    pass


class SafetyAbort(AutoUnlockError):
    def __init__(self, reason: str, state: str | None = None, **details):
        super().__init__(reason, state=state, **details)
        self.state = state


class SlotOperationFailed(AutoUnlockError):
    pass


class SlotOccupied(SlotOperationFailed):
    """The target slot was not free at install time.

    Safety validation runs before every install, so reaching this means the
    header changed underneath us or validation was bypassed.
    """


class BackupFailed(AutoUnlockError):
    pass


class ArchiveFailed(AutoUnlockError):
    pass


class ConfigInconsistent(AutoUnlockError):
    pass


class NoEncryptedDevices(AutoUnlockError):
    pass


class ProtectedSlotError(AutoUnlockError):
    pass


class HookSourceMissing(AutoUnlockError):
    pass


class InspectionFailed(AutoUnlockError):
    pass

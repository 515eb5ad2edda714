"""Error taxonomy for backup and restore runs."""

from __future__ import annotations


class BackupError(Exception):
    """Base class for all backup/restore failures.

    Fatal errors abort the current run. Non-fatal ones are logged and
    collected into the run summary.
    """

    fatal = True
    step = "backup"

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        if step is not None:
            self.step = step


class MissingDatabaseError(BackupError):
    step = "snapshot"


class DumpError(BackupError):
    step = "snapshot"


class CorruptArchiveError(BackupError):
    step = "archive"


class LockError(BackupError):
    step = "lock"


class CommandError(BackupError):
    """An external command (docker, rclone, crontab) exited non-zero."""

    step = "command"

    def __init__(self, message: str, *, output: str = "", step: str | None = None) -> None:
        super().__init__(message, step=step)
        self.output = output


class SelectionError(BackupError):
    step = "select"


class InvalidArchiveError(BackupError):
    step = "validate"


class ExtractionError(BackupError):
    """Unpacking failed. ``output`` holds the diagnostic text verbatim."""

    step = "extract"

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class AmbiguousBackupError(BackupError):
    step = "classify"


class DatabaseNotReadyError(BackupError):
    step = "apply"


class ReplayError(BackupError):
    step = "apply"


class TransportError(BackupError):
    fatal = False
    step = "transport"


class RetentionError(BackupError):
    fatal = False
    step = "retention"

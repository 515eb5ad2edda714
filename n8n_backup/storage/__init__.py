"""Remote stores for off-site copies of backup archives."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from n8n_backup.config import BackupConfig


@dataclass
class RemoteEntry:
    """Metadata for a single remote archive."""

    name: str  # Just the filename
    size: int | None = None  # Bytes, when the store reports it
    modified: datetime | None = None


class RemoteStore(Protocol):
    """The four operations the backup tool needs from a remote."""

    label: str

    def list_archives(self) -> list[RemoteEntry]: ...

    def download(self, name: str, dest: Path) -> Path: ...

    def upload(self, path: Path) -> str: ...

    def delete_older_than(self, days: int) -> int: ...


def create_remote_store(config: BackupConfig) -> RemoteStore | None:
    """Create the configured remote store, or None when none is configured."""
    if config.remote_type == "rclone":
        from n8n_backup.storage.rclone import RcloneStore

        return RcloneStore(config.rclone_remote, config.rclone_folder)

    if config.remote_type == "s3":
        from n8n_backup.storage.s3 import S3Store

        return S3Store(config)

    return None

"""Archive manifest (backup_metadata.json)."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from n8n_backup import __version__
from n8n_backup.config import DatabaseKind

MANIFEST_FILE = "backup_metadata.json"
SQLITE_PAYLOAD = "database.sqlite"
POSTGRES_PAYLOAD = "database.sql"
ENCRYPTION_KEY = "encryptionKey"
CREDENTIALS_DIR = "credentials"
CONFIG_DIR = "config"

PAYLOADS: dict[DatabaseKind, str] = {
    DatabaseKind.sqlite: SQLITE_PAYLOAD,
    DatabaseKind.postgres: POSTGRES_PAYLOAD,
}


class BackupManifest(BaseModel):
    backup_name: str
    backup_date: datetime
    database_kind: DatabaseKind
    n8n_version: str = "unknown"
    backup_type: str = "full"
    files: list[str] = Field(default_factory=list)
    tool_version: str = __version__

    @property
    def payload(self) -> str:
        """Relative path of the database payload inside the content dir."""
        return f"{CREDENTIALS_DIR}/{PAYLOADS[self.database_kind]}"

    def write(self, content_dir: Path) -> Path:
        path = content_dir / MANIFEST_FILE
        path.write_text(self.model_dump_json(indent=2))
        return path

    @classmethod
    def read(cls, content_dir: Path) -> BackupManifest | None:
        """Load the manifest if the archive carries one (older archives don't)."""
        path = content_dir / MANIFEST_FILE
        if not path.is_file():
            return None
        return cls.model_validate_json(path.read_text())


def list_files(content_dir: Path) -> list[str]:
    """Sorted relative paths of every file under ``content_dir``, manifest excluded."""
    return sorted(
        str(p.relative_to(content_dir))
        for p in content_dir.rglob("*")
        if p.is_file() and p.name != MANIFEST_FILE
    )

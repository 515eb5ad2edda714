"""Archiver: staging dir -> verified tar.gz, and the inverse for restore."""

from __future__ import annotations

import logging
import re
import shutil
import tarfile
import zlib
from datetime import datetime
from pathlib import Path
from typing import Protocol

from n8n_backup.errors import BackupError, CorruptArchiveError, ExtractionError, InvalidArchiveError

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "n8n_backup_"
ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_NAME_RE = re.compile(r"^n8n_backup_(\d{8}_\d{6})(?:\.tar\.gz)?$")

# Errors tarfile/gzip raise on truncated or garbage input
_READ_ERRORS = (tarfile.TarError, EOFError, OSError, zlib.error)


def archive_name(now: datetime) -> str:
    """Archive identifier for a creation time, e.g. n8n_backup_20240115_020000."""
    return f"{ARCHIVE_PREFIX}{now.strftime(TIMESTAMP_FORMAT)}"


def parse_archive_timestamp(name: str) -> datetime | None:
    """Return the timestamp embedded in an archive name, or None if it isn't one."""
    match = _NAME_RE.match(Path(name).name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


class Archiver(Protocol):
    def create(self, staging_dir: Path, dest_dir: Path) -> Path: ...

    def verify(self, path: Path) -> list[str]: ...

    def extract(self, path: Path, dest_dir: Path) -> Path: ...


class TarArchiver:
    """gzip-compressed tar archives with a single top-level directory."""

    def __init__(self, compression_level: int = 6) -> None:
        self.compression_level = compression_level

    def create(self, staging_dir: Path, dest_dir: Path) -> Path:
        """Compress ``staging_dir`` into ``dest_dir/<name>.tar.gz`` and verify it.

        The staging directory is removed whatever the outcome. A file that
        fails verification is deleted before CorruptArchiveError is raised.
        """
        name = staging_dir.name
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / f"{name}{ARCHIVE_SUFFIX}"
        part = dest.with_name(dest.name + ".part")

        try:
            if dest.exists():
                raise BackupError(f"Archive already exists: {dest}", step="archive")

            logger.info(f"[archive] Creating {dest.name}")
            try:
                with tarfile.open(part, "w:gz", compresslevel=self.compression_level) as tar:
                    tar.add(str(staging_dir), arcname=name)
            except (tarfile.TarError, OSError) as e:
                part.unlink(missing_ok=True)
                raise CorruptArchiveError(f"Could not create {dest.name}: {e}") from e

            part.rename(dest)

            try:
                members = self.verify(dest)
            except InvalidArchiveError as e:
                dest.unlink(missing_ok=True)
                raise CorruptArchiveError(f"Archive failed verification and was removed: {e}") from e
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        logger.info(f"[archive] Verified {dest.name}: {len(members)} entries, {dest.stat().st_size:,} bytes")
        return dest

    def verify(self, path: Path) -> list[str]:
        """List every member of the archive. Raises InvalidArchiveError if unreadable."""
        if not path.is_file():
            raise InvalidArchiveError(f"Archive not found: {path}")

        try:
            with tarfile.open(path, "r:gz") as tar:
                names = tar.getnames()
        except _READ_ERRORS as e:
            raise InvalidArchiveError(f"{path.name} is corrupted or not a tar.gz archive: {e}") from e

        if not names:
            raise InvalidArchiveError(f"{path.name} is empty")
        return names

    def extract(self, path: Path, dest_dir: Path) -> Path:
        """Unpack the archive into ``dest_dir`` (created if needed)."""
        dest_dir.mkdir(parents=True, exist_ok=True)
        root = dest_dir.resolve()

        try:
            with tarfile.open(path, "r:gz") as tar:
                for member in tar.getmembers():
                    member_path = (dest_dir / member.name).resolve()
                    if member_path != root and root not in member_path.parents:
                        raise ExtractionError(
                            f"Blocked path traversal in {path.name}",
                            output=f"unsafe member: {member.name}",
                        )
                tar.extractall(path=str(dest_dir), filter="data")
        except ExtractionError:
            raise
        except _READ_ERRORS as e:
            raise ExtractionError(f"Failed to extract {path.name}", output=str(e)) from e

        logger.info(f"[archive] Extracted {path.name} to {dest_dir}")
        return dest_dir

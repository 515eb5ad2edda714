"""Snapshot producer: stage database payload + config files for archiving."""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from n8n_backup.archive import ARCHIVE_PREFIX
from n8n_backup.config import DOWNLOAD_PREFIX, EXTRACT_PREFIX, DatabaseKind
from n8n_backup.errors import MissingDatabaseError
from n8n_backup.manifest import (
    CONFIG_DIR,
    CREDENTIALS_DIR,
    ENCRYPTION_KEY,
    PAYLOADS,
    BackupManifest,
    list_files,
)

if TYPE_CHECKING:
    from n8n_backup.config import BackupConfig
    from n8n_backup.database import DatabaseBackend

logger = logging.getLogger(__name__)

# Seconds; restore temp dirs younger than this may belong to a running restore
RESTORE_ORPHAN_AGE = 24 * 3600


@dataclass
class Snapshot:
    """A staged, uncompressed capture ready for the archiver."""

    path: Path
    database_kind: DatabaseKind
    payload_size: int
    manifest: BackupManifest


def clean_orphans(work_dir: Path, now: float | None = None) -> list[Path]:
    """Remove temp directories left behind by interrupted runs.

    Staging dirs always go (the caller holds the run lock). Restore extract
    and download dirs exist before a restore takes the lock, so only those
    untouched for RESTORE_ORPHAN_AGE seconds are removed.
    """
    if not work_dir.is_dir():
        return []
    now = time.time() if now is None else now
    removed = []
    for d in sorted(work_dir.iterdir()):
        if not d.is_dir():
            continue
        if d.name.startswith(ARCHIVE_PREFIX):
            kind = "staging"
        elif d.name.startswith((EXTRACT_PREFIX, DOWNLOAD_PREFIX)) and now - d.stat().st_mtime > RESTORE_ORPHAN_AGE:
            kind = "restore"
        else:
            continue
        shutil.rmtree(d, ignore_errors=True)
        removed.append(d)
        logger.info(f"[snapshot] Removed orphaned {kind} dir {d}")
    return removed


def produce_snapshot(
    config: BackupConfig,
    name: str,
    backend: DatabaseBackend,
    *,
    n8n_version: str = "unknown",
    now: datetime | None = None,
) -> Snapshot:
    """Stage ``<work_dir>/<name>/`` with credentials/, config/ and the manifest.

    Raises MissingDatabaseError (no payload) or DumpError (dump tool failed);
    the staging directory is removed before either propagates.
    """
    staging = config.work_dir / name
    if staging.exists():
        shutil.rmtree(staging)
    credentials = staging / CREDENTIALS_DIR
    config_dir = staging / CONFIG_DIR
    credentials.mkdir(parents=True)
    config_dir.mkdir()

    try:
        payload = credentials / PAYLOADS[backend.kind]
        if backend.kind is DatabaseKind.postgres and not backend.is_ready():
            raise MissingDatabaseError("PostgreSQL is not reachable; no database payload to back up")

        logger.info(f"[snapshot] Capturing {backend.kind.value} database")
        payload_size = backend.dump(payload)

        key = config.data_dir / ENCRYPTION_KEY
        if key.is_file():
            shutil.copy2(key, credentials / ENCRYPTION_KEY)
        else:
            logger.info(f"[snapshot] {ENCRYPTION_KEY} not found, skipping")

        for path in config.config_files:
            if path.is_file():
                shutil.copy2(path, config_dir / path.name)
                logger.debug(f"[snapshot] Captured {path.name}")

        manifest = BackupManifest(
            backup_name=name,
            backup_date=now or datetime.now(UTC),
            database_kind=backend.kind,
            n8n_version=n8n_version,
            files=list_files(staging),
        )
        manifest.write(staging)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    logger.info(f"[snapshot] Staged {len(manifest.files)} file(s) in {staging}")
    return Snapshot(path=staging, database_kind=backend.kind, payload_size=payload_size, manifest=manifest)

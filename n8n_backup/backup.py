"""Backup pipeline: Snapshot -> Archive -> Verify -> Retention -> Transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from n8n_backup.archive import TarArchiver, archive_name
from n8n_backup.database import create_backend, n8n_version
from n8n_backup.errors import BackupError, RetentionError, TransportError
from n8n_backup.lock import run_lock
from n8n_backup.notify import deliver_archive, failure_message
from n8n_backup.retention import prune_local, prune_remote
from n8n_backup.snapshot import clean_orphans, produce_snapshot
from n8n_backup.utils import format_size

if TYPE_CHECKING:
    from n8n_backup.archive import Archiver
    from n8n_backup.config import BackupConfig, DatabaseKind
    from n8n_backup.database import DatabaseBackend
    from n8n_backup.notify import Notifier
    from n8n_backup.storage import RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    """Outcome of a successful run. ``warnings`` holds the non-fatal failures."""

    archive: Path
    size_bytes: int
    database_kind: DatabaseKind
    deleted_local: list[Path] = field(default_factory=list)
    deleted_remote: int = 0
    uploaded: str | None = None
    telegram_file_sent: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings


def _notify_failure(notifier: Notifier | None, error: BackupError) -> None:
    if notifier is None:
        return
    try:
        notifier.send_message(failure_message(error.step, str(error)))
    except TransportError as e:
        logger.warning(f"[telegram] Could not report failure: {e}")


def run_backup(
    config: BackupConfig,
    *,
    backend: DatabaseBackend | None = None,
    archiver: Archiver | None = None,
    remote: RemoteStore | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
    version_probe: Callable[[str], str] | None = None,
) -> BackupResult:
    """Run one full backup. ``remote``/``notifier`` left as None disable that sink.

    Raises a fatal BackupError if the lock, snapshot or archive step fails,
    after a best-effort failure notification. Retention and transport
    failures only add to ``BackupResult.warnings``.
    """
    backend = backend or create_backend(config)
    archiver = archiver or TarArchiver(config.compression_level)
    now = now or datetime.now(UTC)
    name = archive_name(now)

    logger.info("=" * 60)
    logger.info(f"N8N backup - {name}")
    logger.info("=" * 60)

    try:
        with run_lock(config.lock_path):
            clean_orphans(config.work_dir)

            snapshot = produce_snapshot(
                config,
                name,
                backend,
                n8n_version=(version_probe or n8n_version)(config.app_container),
                now=now,
            )
            archive = archiver.create(snapshot.path, config.backup_dir)
            result = _finish(config, archive, snapshot.database_kind, remote, notifier)
    except BackupError as e:
        logger.error(f"[backup] Failed at step '{e.step}': {e}")
        _notify_failure(notifier, e)
        raise

    if result.warnings:
        logger.warning(f"[backup] Completed with {len(result.warnings)} warning(s)")
    else:
        logger.info("[backup] Backup process completed successfully")
    return result


def _finish(
    config: BackupConfig,
    archive: Path,
    kind: DatabaseKind,
    remote: RemoteStore | None,
    notifier: Notifier | None,
) -> BackupResult:
    """Retention and transport for a verified archive. Never raises BackupError."""
    size = archive.stat().st_size
    result = BackupResult(archive=archive, size_bytes=size, database_kind=kind)
    logger.info(f"[backup] Backup complete: {archive.name} ({format_size(size)})")

    try:
        result.deleted_local = prune_local(config.backup_dir, config.max_local_backups)
    except RetentionError as e:
        logger.warning(f"[retention] {e}")
        result.warnings.append(str(e))

    upload_status = None
    if remote is not None:
        try:
            result.uploaded = remote.upload(archive)
            upload_status = f"uploaded to {remote.label}"
        except Exception as e:
            error = TransportError(f"Upload to {remote.label} failed: {e}")
            logger.warning(f"[transport] {error}")
            result.warnings.append(str(error))
            upload_status = "upload failed"

        try:
            result.deleted_remote = prune_remote(remote, config.remote_retention_days)
        except RetentionError as e:
            logger.warning(f"[retention] {e}")
            result.warnings.append(str(e))

    if notifier is not None:
        result.telegram_file_sent, errors = deliver_archive(notifier, archive, size, upload_status)
        result.warnings.extend(str(e) for e in errors)

    return result

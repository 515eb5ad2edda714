"""Restorer: select -> validate -> extract -> classify -> apply -> done."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from dotenv import dotenv_values

from n8n_backup.archive import ARCHIVE_PREFIX, TarArchiver
from n8n_backup.config import DOWNLOAD_PREFIX, ENV_FILE, EXTRACT_PREFIX, DatabaseKind, PostgresCredentials
from n8n_backup.database import create_backend
from n8n_backup.errors import (
    AmbiguousBackupError,
    BackupError,
    DatabaseNotReadyError,
    SelectionError,
)
from n8n_backup.lock import run_lock
from n8n_backup.manifest import CONFIG_DIR, CREDENTIALS_DIR, PAYLOADS, SQLITE_PAYLOAD, BackupManifest
from n8n_backup.polling import PollingPolicy

if TYPE_CHECKING:
    from n8n_backup.archive import Archiver
    from n8n_backup.compose import ComposeRunner
    from n8n_backup.config import BackupConfig
    from n8n_backup.database import DatabaseBackend
    from n8n_backup.storage import RemoteEntry, RemoteStore

logger = logging.getLogger(__name__)


class RestoreStep(str, Enum):
    select = "select"
    validate = "validate"
    extract = "extract"
    classify = "classify"
    apply = "apply"
    done = "done"


class RestoreSource(str, Enum):
    local_path = "local_path"
    remote_name = "remote_name"


@dataclass
class RestoreRequest:
    """One restore operation. ``location`` is a file path or a remote archive name."""

    source: RestoreSource
    location: str = ""
    select: int | None = None


@dataclass
class RestoreReport:
    archive: Path
    database_kind: DatabaseKind
    restored: list[Path] = field(default_factory=list)
    backups: list[Path] = field(default_factory=list)


def _keep_backup(target: Path, backups: list[Path]) -> None:
    """Copy an existing ``target`` to ``<target>.bak`` before it is overwritten."""
    if not target.exists():
        return
    bak = target.with_name(target.name + ".bak")
    shutil.copy2(target, bak)
    backups.append(bak)
    logger.info(f"[restore] Saved existing {target.name} as {bak.name}")


def _replace_file(src: Path, target: Path, backups: list[Path]) -> None:
    _keep_backup(target, backups)
    shutil.copy2(src, target)


class Restorer:
    """Reconstruct an install's data directory (and database) from an archive."""

    def __init__(
        self,
        config: BackupConfig,
        *,
        compose: ComposeRunner,
        archiver: Archiver | None = None,
        remote: RemoteStore | None = None,
        polling: PollingPolicy | None = None,
        backend_factory: Callable[[BackupConfig], DatabaseBackend] = create_backend,
    ) -> None:
        self.config = config
        self.compose = compose
        self.archiver = archiver or TarArchiver(config.compression_level)
        self.remote = remote
        self.polling = polling or PollingPolicy(config.ready_attempts, config.ready_interval)
        self.backend_factory = backend_factory
        self.step = RestoreStep.select
        self._temp_dirs: list[Path] = []

    # ── select ──────────────────────────────────────────────────────────

    def _temp_dir(self, prefix: str) -> Path:
        self.config.work_dir.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=prefix, dir=self.config.work_dir))
        self._temp_dirs.append(path)
        return path

    def select_local(self, path: str | Path) -> Path:
        self.step = RestoreStep.select
        archive = Path(path).expanduser()
        if not archive.is_file():
            raise SelectionError(f"File does not exist: {archive}")
        return archive

    def list_remote(self) -> list[RemoteEntry]:
        """Remote archives, newest first."""
        self.step = RestoreStep.select
        if self.remote is None:
            raise SelectionError("No remote store configured")
        entries = self.remote.list_archives()
        if not entries:
            raise SelectionError(f"No backup files found in {self.remote.label}")
        return entries

    def select_remote(self, index: int, entries: list[RemoteEntry] | None = None) -> Path:
        """Download the ``index``-th (1-based, newest first) remote archive."""
        entries = entries if entries is not None else self.list_remote()
        if index < 1 or index > len(entries):
            raise SelectionError(f"Invalid choice {index}: pick 1-{len(entries)}")

        entry = entries[index - 1]
        dest = self._temp_dir(DOWNLOAD_PREFIX) / entry.name
        try:
            return self.remote.download(entry.name, dest)
        except BackupError as e:
            raise SelectionError(f"Could not download {entry.name}: {e}") from e

    # ── validate / extract / classify ───────────────────────────────────

    def validate(self, archive: Path) -> list[str]:
        self.step = RestoreStep.validate
        logger.info(f"[restore] Checking backup file integrity: {archive.name}")
        return self.archiver.verify(archive)

    def extract(self, archive: Path) -> Path:
        self.step = RestoreStep.extract
        return self.archiver.extract(archive, self._temp_dir(EXTRACT_PREFIX))

    def classify(self, extract_dir: Path) -> tuple[Path, DatabaseKind]:
        """Locate the content dir and the one database payload it holds."""
        self.step = RestoreStep.classify

        candidates = [d for d in extract_dir.iterdir() if d.is_dir() and d.name.startswith(ARCHIVE_PREFIX)]
        if len(candidates) == 1:
            content_dir = candidates[0]
        elif not candidates and (extract_dir / CREDENTIALS_DIR).is_dir():
            content_dir = extract_dir
        else:
            found = ", ".join(sorted(p.name for p in extract_dir.iterdir())) or "nothing"
            raise AmbiguousBackupError(f"Invalid backup structure: expected one {ARCHIVE_PREFIX}* dir, found {found}")

        present = [kind for kind, payload in PAYLOADS.items() if (content_dir / CREDENTIALS_DIR / payload).is_file()]
        if len(present) != 1:
            what = "both database.sqlite and database.sql" if present else "no database payload"
            raise AmbiguousBackupError(f"Backup contains {what}")
        kind = present[0]

        try:
            manifest = BackupManifest.read(content_dir)
        except ValueError as e:
            raise AmbiguousBackupError(f"Unreadable backup manifest: {e}") from e
        if manifest is not None and manifest.database_kind is not kind:
            raise AmbiguousBackupError(
                f"Manifest says {manifest.database_kind.value} but payload is {kind.value}"
            )

        logger.info(f"[restore] Found {kind.value} backup in {content_dir.name}")
        return content_dir, kind

    # ── apply ───────────────────────────────────────────────────────────

    def _restored_credentials(self, content_dir: Path) -> PostgresCredentials:
        """Credentials from the archived .env when present, else the current ones."""
        current = self.config.postgres
        env_file = content_dir / CONFIG_DIR / ENV_FILE
        if not env_file.is_file():
            return current
        values = {k: v for k, v in dotenv_values(env_file).items() if v}
        return replace(
            current,
            user=values.get("POSTGRES_USER", current.user),
            password=values.get("POSTGRES_PASSWORD", current.password),
            database=values.get("POSTGRES_DB", current.database),
        )

    def _apply_config(self, content_dir: Path, report: RestoreReport) -> None:
        config_dir = content_dir / CONFIG_DIR
        if not config_dir.is_dir():
            return
        self.config.install_dir.mkdir(parents=True, exist_ok=True)
        for src in sorted(config_dir.iterdir()):
            if src.is_file():
                target = self.config.install_dir / src.name
                _replace_file(src, target, report.backups)
                report.restored.append(target)
        logger.info(f"[restore] Restored {len(list(config_dir.iterdir()))} config file(s)")

    def _apply_credentials(self, content_dir: Path, report: RestoreReport) -> None:
        """Copy the non-payload credential files (encryption key) into the data dir."""
        data_dir = self.config.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)
        for src in sorted((content_dir / CREDENTIALS_DIR).iterdir()):
            if src.is_file() and src.name not in PAYLOADS.values():
                target = data_dir / src.name
                _replace_file(src, target, report.backups)
                report.restored.append(target)

    def _set_ownership(self, paths: list[Path]) -> None:
        uid, gid = self.config.service_uid, self.config.service_gid
        for path in paths:
            try:
                os.chown(path, uid, gid)
            except PermissionError:
                logger.warning(f"[restore] Could not chown {path} to {uid}:{gid} (not root?)")

    def apply(self, content_dir: Path, kind: DatabaseKind, report: RestoreReport) -> None:
        self.step = RestoreStep.apply
        self._apply_config(content_dir, report)
        payload = content_dir / CREDENTIALS_DIR / PAYLOADS[kind]

        if kind is DatabaseKind.sqlite:
            backend = self.backend_factory(replace(self.config, database_kind=kind))
            target = self.config.data_dir / SQLITE_PAYLOAD
            _keep_backup(target, report.backups)
            backend.replay(payload)
            target.chmod(0o644)
            report.restored.append(target)
        else:
            config = replace(self.config, database_kind=kind, postgres=self._restored_credentials(content_dir))
            backend = self.backend_factory(config)

            # N8N must not write to the database while the dump is replayed
            self.compose.stop(self.config.app_service)
            self.compose.up(self.config.postgres_service)
            if not self.polling.wait_until(backend.is_ready, "PostgreSQL"):
                raise DatabaseNotReadyError(
                    f"PostgreSQL not ready after {self.polling.max_attempts} attempts "
                    f"(~{self.polling.budget:.0f}s); dump not replayed"
                )
            backend.replay(payload)

        self._apply_credentials(content_dir, report)
        self._set_ownership([p for p in report.restored if p.parent == self.config.data_dir])

    # ── pipeline ────────────────────────────────────────────────────────

    def cleanup(self) -> None:
        for path in self._temp_dirs:
            shutil.rmtree(path, ignore_errors=True)
        self._temp_dirs.clear()

    def restore(self, archive: Path, *, start: bool = False) -> RestoreReport:
        """Validate, extract, classify and apply ``archive``.

        Any failure aborts the remaining steps and is re-raised as a
        BackupError whose ``step`` names where it happened.
        """
        logger.info(f"[restore] Starting restore from {archive}")
        try:
            # Validation only reads the archive, so a bad file never touches the install dir
            self.validate(archive)
            with run_lock(self.config.lock_path):
                extract_dir = self.extract(archive)
                content_dir, kind = self.classify(extract_dir)

                report = RestoreReport(archive=archive, database_kind=kind)
                self.apply(content_dir, kind, report)

                if start:
                    self.compose.up()
                self.step = RestoreStep.done
        except BackupError as e:
            e.step = self.step.value
            logger.error(f"[restore] Failed at step '{self.step.value}': {e}")
            raise
        except OSError as e:
            logger.error(f"[restore] Failed at step '{self.step.value}': {e}")
            raise BackupError(f"{type(e).__name__}: {e}", step=self.step.value) from e
        finally:
            self.cleanup()

        logger.info(f"[restore] Data restored successfully ({len(report.restored)} file(s))")
        return report

    def run(
        self,
        request: RestoreRequest,
        choose: Callable[[list[RemoteEntry]], int] | None = None,
        *,
        start: bool = False,
    ) -> RestoreReport:
        """Resolve the request to an archive file, then restore it."""
        try:
            if request.source is RestoreSource.local_path:
                archive = self.select_local(request.location)
            else:
                entries = self.list_remote()
                index = request.select
                if index is None and request.location:
                    names = [e.name for e in entries]
                    if request.location not in names:
                        raise SelectionError(f"{request.location} not found in {self.remote.label}")
                    index = names.index(request.location) + 1
                if index is None:
                    if choose is None:
                        raise SelectionError("No archive selected")
                    index = choose(entries)
                archive = self.select_remote(index, entries)
        except BackupError as e:
            e.step = RestoreStep.select.value
            logger.error(f"[restore] Failed at step 'select': {e}")
            self.cleanup()
            raise
        return self.restore(archive, start=start)

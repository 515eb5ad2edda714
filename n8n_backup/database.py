"""Database backends: dump, readiness check, replay."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from n8n_backup.config import DatabaseKind, PostgresCredentials
from n8n_backup.errors import DumpError, MissingDatabaseError, ReplayError
from n8n_backup.manifest import SQLITE_PAYLOAD

if TYPE_CHECKING:
    from n8n_backup.config import BackupConfig

logger = logging.getLogger(__name__)


class DatabaseBackend(Protocol):
    kind: DatabaseKind

    def dump(self, dest: Path) -> int: ...

    def is_ready(self) -> bool: ...

    def replay(self, payload: Path) -> None: ...


def mask_credentials(creds: PostgresCredentials) -> str:
    """Connection string with the password masked for display."""
    return f"postgresql://{creds.user}:****@{creds.host}:{creds.port}/{creds.database}"


class SqliteBackend:
    """SQLite database file living in the N8N data directory."""

    kind = DatabaseKind.sqlite

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir

    def locate(self) -> Path | None:
        """Find the live database file, falling back to a recursive search."""
        direct = self.data_dir / SQLITE_PAYLOAD
        if direct.is_file():
            return direct
        if not self.data_dir.is_dir():
            return None
        return next((p for p in sorted(self.data_dir.rglob(SQLITE_PAYLOAD)) if p.is_file()), None)

    def dump(self, dest: Path) -> int:
        """Copy the database file to ``dest``. Returns bytes copied.

        This is a raw copy taken while N8N may still be writing; the service
        is not paused, so the copy is not guaranteed point-in-time consistent.
        """
        source = self.locate()
        if source is None:
            raise MissingDatabaseError(f"{SQLITE_PAYLOAD} not found under {self.data_dir}")

        shutil.copy2(source, dest)
        size = dest.stat().st_size
        logger.info(f"[sqlite] Copied {source} ({size:,} bytes)")
        return size

    def is_ready(self) -> bool:
        return True

    def replay(self, payload: Path) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        target = self.data_dir / SQLITE_PAYLOAD
        shutil.copy2(payload, target)
        logger.info(f"[sqlite] Restored database to {target}")


class PostgresBackend:
    """PostgreSQL reached through ``docker exec`` or directly over TCP."""

    kind = DatabaseKind.postgres

    def __init__(self, credentials: PostgresCredentials, container: str = "", timeout: int = 600) -> None:
        self.credentials = credentials
        self.container = container
        self.timeout = timeout

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["PGPASSWORD"] = self.credentials.password
        return env

    def _command(self, tool: str, *args: str) -> list[str]:
        db = self.credentials
        if self.container:
            # -e PGPASSWORD forwards the variable from our env without putting it on argv
            prefix = ["docker", "exec", "-i", "-e", "PGPASSWORD", self.container, tool]
        else:
            prefix = [tool, "-h", db.host, "-p", str(db.port)]
        return [*prefix, "-U", db.user, "-d", db.database, *args]

    def dump(self, dest: Path) -> int:
        """Write a plain-SQL dump to ``dest``. Returns its size in bytes."""
        cmd = self._command("pg_dump", "--format=plain", "--no-owner", "--no-acl", "--clean", "--if-exists")
        logger.info(f"[postgres] Starting dump of {mask_credentials(self.credentials)}")

        try:
            with open(dest, "wb") as out:
                result = subprocess.run(
                    cmd,
                    stdout=out,
                    stderr=subprocess.PIPE,
                    env=self._env(),
                    timeout=self.timeout,
                )
        except FileNotFoundError as e:
            dest.unlink(missing_ok=True)
            raise DumpError(f"{cmd[0]} not found - install postgresql-client or docker") from e
        except subprocess.TimeoutExpired as e:
            dest.unlink(missing_ok=True)
            raise DumpError(f"pg_dump timed out after {self.timeout}s") from e

        if result.returncode != 0:
            dest.unlink(missing_ok=True)
            stderr = result.stderr.decode(errors="replace")[:500]
            raise DumpError(f"pg_dump failed: {stderr}")

        size = dest.stat().st_size
        logger.info(f"[postgres] Dump complete: {size:,} bytes")
        return size

    def is_ready(self) -> bool:
        try:
            result = subprocess.run(
                self._command("pg_isready"),
                capture_output=True,
                env=self._env(),
                timeout=10,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug(f"[postgres] pg_isready failed: {e}")
            return False
        return result.returncode == 0

    def replay(self, payload: Path) -> None:
        """Pipe a plain-SQL dump into psql. Stops at the first SQL error."""
        cmd = self._command("psql", "-v", "ON_ERROR_STOP=1", "--quiet")
        logger.info(f"[postgres] Replaying {payload.name} into {mask_credentials(self.credentials)}")

        try:
            with open(payload, "rb") as sql:
                result = subprocess.run(
                    cmd,
                    stdin=sql,
                    capture_output=True,
                    env=self._env(),
                    timeout=self.timeout,
                )
        except FileNotFoundError as e:
            raise ReplayError(f"{cmd[0]} not found - install postgresql-client or docker") from e
        except subprocess.TimeoutExpired as e:
            raise ReplayError(f"psql restore timed out after {self.timeout}s") from e

        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace")[:500]
            raise ReplayError(f"psql restore failed: {stderr}")

        logger.info("[postgres] Restore completed successfully")


def create_backend(config: BackupConfig) -> DatabaseBackend:
    """Create the backend for the install's database kind."""
    if config.database_kind is DatabaseKind.postgres:
        return PostgresBackend(config.postgres, config.postgres_container, config.dump_timeout)
    return SqliteBackend(config.data_dir)


def n8n_version(container: str) -> str:
    """Ask the running N8N container for its version. ``"unknown"`` if it can't answer."""
    if not container:
        return "unknown"
    try:
        result = subprocess.run(
            ["docker", "exec", container, "n8n", "--version"],
            capture_output=True,
            timeout=15,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    if result.returncode != 0:
        return "unknown"
    return result.stdout.decode(errors="replace").strip() or "unknown"

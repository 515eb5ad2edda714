"""rclone remote (Google Drive or anything else rclone can reach)."""

from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime
from pathlib import Path

from n8n_backup.archive import ARCHIVE_PREFIX, ARCHIVE_SUFFIX
from n8n_backup.errors import CommandError
from n8n_backup.storage import RemoteEntry

logger = logging.getLogger(__name__)

INCLUDE = f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"


class RcloneStore:
    """Store archives in ``<remote>:<folder>`` through the rclone CLI."""

    def __init__(self, remote: str, folder: str, timeout: int = 3600) -> None:
        self.remote = remote
        self.folder = folder
        self.timeout = timeout

    @property
    def label(self) -> str:
        return f"{self.remote}:{self.folder}"

    def _run(self, *args: str) -> str:
        cmd = ["rclone", *args]
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise CommandError("rclone not found - install it from https://rclone.org/install/") from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(f"rclone {args[0]} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace")
            raise CommandError(f"rclone {args[0]} failed: {stderr[:500]}", output=stderr)
        return result.stdout.decode(errors="replace")

    def list_archives(self) -> list[RemoteEntry]:
        """Archives in the folder, newest first."""
        raw = self._run("lsjson", self.label, "--files-only", "--include", INCLUDE)
        entries = []
        for item in json.loads(raw or "[]"):
            modified = None
            if item.get("ModTime"):
                try:
                    modified = datetime.fromisoformat(item["ModTime"].replace("Z", "+00:00"))
                except ValueError:
                    modified = None
            entries.append(RemoteEntry(name=item["Name"], size=item.get("Size"), modified=modified))

        entries.sort(key=lambda e: e.name, reverse=True)
        return entries

    def download(self, name: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"[rclone] Downloading {name} from {self.label}")
        self._run("copyto", f"{self.label}/{name}", str(dest))
        return dest

    def upload(self, path: Path) -> str:
        logger.info(f"[rclone] Uploading {path.name} to {self.label}")
        self._run("copy", str(path), self.label)
        return f"{self.label}/{path.name}"

    def delete_older_than(self, days: int) -> int:
        age = f"{days}d"
        stale = self._run("lsf", self.label, "--files-only", "--include", INCLUDE, "--min-age", age).split()
        if not stale:
            return 0
        self._run("delete", self.label, "--include", INCLUDE, "--min-age", age)
        for name in stale:
            logger.info(f"[rclone] Deleted old backup: {name}")
        return len(stale)

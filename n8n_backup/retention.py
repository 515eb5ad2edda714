"""Retention: count-based locally, age-based on the remote store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from n8n_backup.archive import ARCHIVE_PREFIX, ARCHIVE_SUFFIX, parse_archive_timestamp
from n8n_backup.errors import RetentionError

if TYPE_CHECKING:
    from n8n_backup.storage import RemoteStore

logger = logging.getLogger(__name__)


def local_archives(backup_dir: Path) -> list[Path]:
    """Archives in ``backup_dir``, newest first by embedded timestamp."""
    if not backup_dir.is_dir():
        return []
    found = [
        p
        for p in backup_dir.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}")
        if p.is_file() and parse_archive_timestamp(p.name) is not None
    ]
    return sorted(found, key=lambda p: p.name, reverse=True)


def prune_local(backup_dir: Path, keep: int) -> list[Path]:
    """Delete all but the ``keep`` newest archives. Returns the deleted paths.

    Running it again with no new archives deletes nothing.
    """
    if keep < 1:
        raise RetentionError(f"Local retention needs keep >= 1, got {keep}; nothing deleted")

    archives = local_archives(backup_dir)
    stale = archives[keep:]
    deleted: list[Path] = []
    failed: list[str] = []

    for path in stale:
        try:
            path.unlink()
            deleted.append(path)
            logger.info(f"[retention] Deleted old local backup: {path.name}")
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"[retention] Could not delete {path.name}: {e}")
            failed.append(path.name)

    if failed:
        raise RetentionError(f"Could not delete {len(failed)} local backup(s): {', '.join(failed)}")

    logger.info(f"[retention] Local: kept {min(len(archives), keep)}, deleted {len(deleted)}")
    return deleted


def prune_remote(store: RemoteStore, days: int) -> int:
    """Delete remote archives older than ``days``. Returns the number deleted."""
    try:
        deleted = store.delete_older_than(days)
    except RetentionError:
        raise
    except Exception as e:
        raise RetentionError(f"Remote cleanup failed: {e}") from e

    logger.info(f"[retention] Remote: deleted {deleted} backup(s) older than {days} days")
    return deleted

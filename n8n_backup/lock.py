"""Single-run lock so backup and restore never overlap on one install."""

from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from n8n_backup.errors import LockError

logger = logging.getLogger(__name__)


@contextmanager
def run_lock(path: Path) -> Iterator[Path]:
    """Hold an exclusive, non-blocking flock on ``path`` for the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(f"Another backup/restore run holds {path}") from None

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        logger.debug(f"[lock] Acquired {path}")
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug(f"[lock] Released {path}")
    finally:
        os.close(fd)

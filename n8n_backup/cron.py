"""Install the daily backup job into the user's crontab."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from n8n_backup.errors import CommandError

logger = logging.getLogger(__name__)

CRON_MARKER = "# n8n-backup"


def validate_schedule(schedule: str) -> str:
    """Check a cron expression has five fields. Returns it normalized."""
    parts = schedule.strip().split()
    if len(parts) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(parts)}: {schedule!r}")
    return " ".join(parts)


def build_cron_line(schedule: str, command: list[str], log_file: Path) -> str:
    cmd = " ".join(shlex.quote(part) for part in command)
    return f"{validate_schedule(schedule)} {cmd} >> {shlex.quote(str(log_file))} 2>&1 {CRON_MARKER}"


def _read_crontab() -> str:
    try:
        result = subprocess.run(["crontab", "-l"], capture_output=True, timeout=30)
    except FileNotFoundError as e:
        raise CommandError("crontab not found - install cron") from e
    # Exit 1 with "no crontab for user" just means it's empty
    if result.returncode != 0:
        return ""
    return result.stdout.decode(errors="replace")


def merge_crontab(current: str, line: str) -> str:
    """Replace any earlier n8n-backup entry with ``line``."""
    kept = [entry for entry in current.splitlines() if CRON_MARKER not in entry]
    kept.append(line)
    return "\n".join(kept) + "\n"


def install_cron(schedule: str, command: list[str], log_file: Path) -> str:
    """Write the backup job into the crontab. Returns the installed line."""
    line = build_cron_line(schedule, command, log_file)
    content = merge_crontab(_read_crontab(), line)

    result = subprocess.run(["crontab", "-"], input=content.encode(), capture_output=True, timeout=30)
    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace")
        raise CommandError(f"crontab install failed: {stderr[:500]}", output=stderr, step="schedule")

    logger.info(f"[cron] Installed: {line}")
    return line

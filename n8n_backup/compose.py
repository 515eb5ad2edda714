"""Thin wrapper over ``docker compose`` for the install directory."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from n8n_backup.errors import CommandError

logger = logging.getLogger(__name__)


def detect_compose_command() -> list[str]:
    """Prefer the standalone ``docker-compose`` binary, else the ``docker compose`` plugin."""
    if shutil.which("docker-compose"):
        return ["docker-compose"]
    if shutil.which("docker"):
        result = subprocess.run(["docker", "compose", "version"], capture_output=True, timeout=30)
        if result.returncode == 0:
            return ["docker", "compose"]
    raise CommandError("Docker Compose not found")


class ComposeRunner:
    """Run compose subcommands against the install's docker-compose.yml."""

    def __init__(self, install_dir: Path, command: list[str] | None = None, timeout: int = 300) -> None:
        self.install_dir = install_dir
        self._command = command
        self.timeout = timeout

    @property
    def command(self) -> list[str]:
        if self._command is None:
            self._command = detect_compose_command()
        return self._command

    def _run(self, *args: str) -> str:
        cmd = [*self.command, *args]
        logger.debug(f"[compose] {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=self.install_dir,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e

        output = (result.stdout + result.stderr).decode(errors="replace")
        if result.returncode != 0:
            raise CommandError(f"{' '.join(cmd)} failed (exit {result.returncode})", output=output)
        return output

    def up(self, *services: str) -> None:
        logger.info(f"[compose] Starting {', '.join(services) or 'all services'}")
        self._run("up", "-d", *services)

    def stop(self, *services: str) -> None:
        logger.info(f"[compose] Stopping {', '.join(services) or 'all services'}")
        self._run("stop", *services)

    def is_running(self, service: str) -> bool:
        try:
            output = self._run("ps", "--services", "--filter", "status=running")
        except CommandError:
            return False
        return service in output.split()

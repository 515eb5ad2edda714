"""Backup tool configuration (os.getenv based, plus the installer's config files)."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

ENV_FILE = ".env"
TELEGRAM_CONFIG_FILE = "telegram_config.txt"
GDRIVE_CONFIG_FILE = "gdrive_config.txt"
LOCK_FILE = ".n8n-backup.lock"

# Restore temp dirs under work_dir
EXTRACT_PREFIX = "restore_"
DOWNLOAD_PREFIX = "download_"


class DatabaseKind(str, Enum):
    sqlite = "sqlite"
    postgres = "postgres"


@dataclass(frozen=True)
class PostgresCredentials:
    """Connection settings for the PostgreSQL backend."""

    user: str = "n8n"
    password: str = ""
    database: str = "n8n"
    host: str = "localhost"
    port: int = 5432


def _read_installer_file(path: Path) -> dict[str, str]:
    """Parse a KEY="value" file written by the installer. Missing file -> {}."""
    if not path.is_file():
        return {}
    values = dotenv_values(path)
    return {k: v for k, v in values.items() if v is not None}


@dataclass(frozen=True)
class BackupConfig:
    """Configuration for one backup or restore run. Built once, never mutated."""

    # Install layout
    install_dir: Path = field(default_factory=lambda: Path("/home/n8n"))
    data_dir: Path = field(default_factory=lambda: Path("/home/n8n/files"))
    backup_dir: Path = field(default_factory=lambda: Path("/home/n8n/files/backup_full"))
    log_file: Path = field(default_factory=lambda: Path("/home/n8n/logs/backup.log"))
    work_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "n8n_backup")

    # Database
    database_kind: DatabaseKind = DatabaseKind.sqlite
    postgres: PostgresCredentials = field(default_factory=PostgresCredentials)
    postgres_service: str = "postgres"
    postgres_container: str = "postgres-container"
    app_service: str = "n8n"
    app_container: str = "n8n-container"

    # Retention (local by count, remote by age)
    max_local_backups: int = 30
    remote_retention_days: int = 30

    # Remote storage: "rclone", "s3" or "" (disabled)
    remote_type: str = ""
    rclone_remote: str = "gdrive_n8n"
    rclone_folder: str = "n8n_backups"
    s3_bucket: str = ""
    s3_endpoint_url: str = "https://s3.wasabisys.com"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_region: str = "us-east-1"
    s3_prefix: str = "n8n_backups"

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    # Behavior
    compression_level: int = 6
    dump_timeout: int = 600
    ready_attempts: int = 24
    ready_interval: float = 5.0
    service_uid: int = 1000
    service_gid: int = 1000
    cron_schedule: str = "0 2 * * *"

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables and the install dir files.

        Environment variables win over the installer-written files
        (.env, telegram_config.txt, gdrive_config.txt).
        """
        install_dir = Path(os.getenv("N8N_INSTALL_DIR", "/home/n8n"))
        data_dir = Path(os.getenv("N8N_DATA_DIR", str(install_dir / "files")))

        dotenv = _read_installer_file(install_dir / ENV_FILE)
        telegram = _read_installer_file(install_dir / TELEGRAM_CONFIG_FILE)
        gdrive = _read_installer_file(install_dir / GDRIVE_CONFIG_FILE)

        def pick(name: str, source: dict[str, str], default: str) -> str:
            return os.getenv(name) or source.get(name) or default

        postgres = PostgresCredentials(
            user=pick("POSTGRES_USER", dotenv, "n8n"),
            password=pick("POSTGRES_PASSWORD", dotenv, ""),
            database=pick("POSTGRES_DB", dotenv, "n8n"),
            host=pick("POSTGRES_HOST", dotenv, "localhost"),
            port=int(pick("POSTGRES_PORT", dotenv, "5432")),
        )

        # The installer only writes POSTGRES_* into .env for PostgreSQL installs
        detected_kind = "postgres" if "POSTGRES_USER" in dotenv else "sqlite"
        database_kind = DatabaseKind(os.getenv("N8N_DB_KIND", detected_kind).lower())

        s3_bucket = os.getenv("S3_BUCKET", "")
        remote_type = os.getenv("BACKUP_REMOTE")
        if remote_type is None:
            if gdrive or os.getenv("RCLONE_REMOTE_NAME"):
                remote_type = "rclone"
            elif s3_bucket:
                remote_type = "s3"
            else:
                remote_type = ""

        return cls(
            # Install layout
            install_dir=install_dir,
            data_dir=data_dir,
            backup_dir=Path(os.getenv("N8N_BACKUP_DIR", str(data_dir / "backup_full"))),
            log_file=Path(os.getenv("N8N_BACKUP_LOG", str(install_dir / "logs" / "backup.log"))),
            work_dir=Path(os.getenv("N8N_BACKUP_WORK_DIR", str(Path(tempfile.gettempdir()) / "n8n_backup"))),
            # Database
            database_kind=database_kind,
            postgres=postgres,
            postgres_service=os.getenv("N8N_POSTGRES_SERVICE", "postgres"),
            postgres_container=os.getenv("N8N_POSTGRES_CONTAINER", "postgres-container"),
            app_service=os.getenv("N8N_APP_SERVICE", "n8n"),
            app_container=os.getenv("N8N_APP_CONTAINER", "n8n-container"),
            # Retention
            max_local_backups=int(os.getenv("BACKUP_MAX_LOCAL", "30")),
            remote_retention_days=int(os.getenv("BACKUP_REMOTE_RETENTION_DAYS", "30")),
            # Remote
            remote_type=remote_type.lower(),
            rclone_remote=pick("RCLONE_REMOTE_NAME", gdrive, "gdrive_n8n"),
            rclone_folder=pick("GDRIVE_BACKUP_FOLDER", gdrive, "n8n_backups"),
            s3_bucket=s3_bucket,
            s3_endpoint_url=os.getenv("S3_ENDPOINT_URL", "https://s3.wasabisys.com"),
            s3_access_key=os.getenv("S3_ACCESS_KEY", ""),
            s3_secret_key=os.getenv("S3_SECRET_KEY", ""),
            s3_region=os.getenv("S3_REGION", "us-east-1"),
            s3_prefix=os.getenv("S3_PREFIX", "n8n_backups"),
            # Telegram
            telegram_bot_token=pick("TELEGRAM_BOT_TOKEN", telegram, ""),
            telegram_chat_id=pick("TELEGRAM_CHAT_ID", telegram, ""),
            # Behavior
            compression_level=int(os.getenv("BACKUP_COMPRESSION_LEVEL", "6")),
            dump_timeout=int(os.getenv("BACKUP_DUMP_TIMEOUT", "600")),
            ready_attempts=int(os.getenv("BACKUP_READY_ATTEMPTS", "24")),
            ready_interval=float(os.getenv("BACKUP_READY_INTERVAL", "5")),
            service_uid=int(os.getenv("N8N_UID", "1000")),
            service_gid=int(os.getenv("N8N_GID", "1000")),
            cron_schedule=os.getenv("BACKUP_CRON_SCHEDULE", "0 2 * * *"),
        )

    @property
    def telegram_enabled(self) -> bool:
        """True when both bot token and chat id are configured."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @property
    def remote_enabled(self) -> bool:
        return self.remote_type in ("rclone", "s3")

    @property
    def lock_path(self) -> Path:
        return self.install_dir / LOCK_FILE

    @property
    def config_files(self) -> list[Path]:
        """Install-dir files captured into the archive's config/ directory."""
        names = ["docker-compose.yml", "Caddyfile", TELEGRAM_CONFIG_FILE, GDRIVE_CONFIG_FILE, ENV_FILE]
        return [self.install_dir / name for name in names]

"""S3-compatible remote store (Wasabi, AWS, MinIO)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from n8n_backup.archive import ARCHIVE_PREFIX, ARCHIVE_SUFFIX
from n8n_backup.errors import CommandError
from n8n_backup.storage import RemoteEntry

if TYPE_CHECKING:
    from n8n_backup.config import BackupConfig

logger = logging.getLogger(__name__)


class S3Store:
    """Store archives under ``s3://<bucket>/<prefix>/``."""

    def __init__(self, config: BackupConfig, client=None) -> None:
        self.bucket = config.s3_bucket
        self.prefix = config.s3_prefix.strip("/")
        self.client = client or boto3.client(
            "s3",
            endpoint_url=config.s3_endpoint_url,
            aws_access_key_id=config.s3_access_key,
            aws_secret_access_key=config.s3_secret_key,
            region_name=config.s3_region,
        )

    @property
    def label(self) -> str:
        return f"s3://{self.bucket}/{self.prefix}"

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def _objects(self):
        paginator = self.client.get_paginator("list_objects_v2")
        prefix = f"{self.prefix}/" if self.prefix else ""
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                filename = obj["Key"].split("/")[-1]
                if filename.startswith(ARCHIVE_PREFIX) and filename.endswith(ARCHIVE_SUFFIX):
                    yield filename, obj

    def verify(self) -> None:
        """Verify credentials and bucket access. Raises on failure."""
        self.client.head_bucket(Bucket=self.bucket)

    def list_archives(self) -> list[RemoteEntry]:
        try:
            entries = [
                RemoteEntry(
                    name=filename,
                    size=obj["Size"],
                    modified=obj["LastModified"].replace(tzinfo=UTC),
                )
                for filename, obj in self._objects()
            ]
        except (BotoCoreError, ClientError) as e:
            raise CommandError(f"Failed to list {self.label}: {e}") from e

        entries.sort(key=lambda e: e.name, reverse=True)
        return entries

    def download(self, name: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(self.bucket, self._key(name), str(dest))
        except (BotoCoreError, ClientError) as e:
            raise CommandError(f"Failed to download {name}: {e}") from e
        logger.info(f"[s3] Downloaded {self.label}/{name}")
        return dest

    def upload(self, path: Path) -> str:
        key = self._key(path.name)
        try:
            self.client.upload_file(
                str(path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": "application/gzip"},
            )
        except (BotoCoreError, ClientError) as e:
            raise CommandError(f"Upload failed: {e}") from e
        logger.info(f"[s3] Uploaded to s3://{self.bucket}/{key}")
        return f"s3://{self.bucket}/{key}"

    def delete_older_than(self, days: int) -> int:
        cutoff = datetime.now(UTC) - timedelta(days=days)
        deleted = 0
        try:
            for filename, obj in list(self._objects()):
                if obj["LastModified"].replace(tzinfo=UTC) < cutoff:
                    self.client.delete_object(Bucket=self.bucket, Key=obj["Key"])
                    logger.info(f"[s3] Deleted old backup: {obj['Key']}")
                    deleted += 1
        except (BotoCoreError, ClientError) as e:
            raise CommandError(f"Cleanup failed after {deleted} deletion(s): {e}") from e
        return deleted

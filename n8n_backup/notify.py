"""Telegram notifications for backup runs."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import httpx

from n8n_backup.errors import TransportError
from n8n_backup.utils import format_size

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

# Bot API upload ceiling; fixed by Telegram
TELEGRAM_FILE_LIMIT = 20 * 1024 * 1024

# Characters legacy Markdown treats as entity markers outside code spans
_MARKDOWN_SPECIAL = "_*`["


def escape_markdown(text: str) -> str:
    """Escape free text for Telegram's legacy ``Markdown`` parse mode."""
    return "".join(f"\\{ch}" if ch in _MARKDOWN_SPECIAL else ch for ch in text)


class Notifier(Protocol):
    def send_message(self, text: str) -> None: ...

    def send_document(self, path: Path, caption: str = "") -> None: ...


class TelegramNotifier:
    """Send messages and files to one chat through the Bot API."""

    def __init__(self, token: str, chat_id: str, client: httpx.Client | None = None, timeout: float = 120.0) -> None:
        self.chat_id = chat_id
        self._base_url = f"{TELEGRAM_API_URL}/bot{token}"
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        self._client.close()

    def _post(self, method: str, **kwargs) -> dict:
        try:
            response = self._client.post(f"{self._base_url}/{method}", **kwargs)
        except httpx.HTTPError as e:
            # Never include the URL: it carries the bot token
            raise TransportError(f"Telegram {method} failed: {type(e).__name__}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code != 200 or not payload.get("ok"):
            description = payload.get("description") or f"HTTP {response.status_code}"
            raise TransportError(f"Telegram {method} rejected: {description}")
        return payload

    def send_message(self, text: str) -> None:
        self._post("sendMessage", data={"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"})
        logger.info("[telegram] Status message sent")

    def send_document(self, path: Path, caption: str = "") -> None:
        with open(path, "rb") as fh:
            self._post(
                "sendDocument",
                data={"chat_id": self.chat_id, "caption": caption},
                files={"document": (path.name, fh, "application/gzip")},
            )
        logger.info(f"[telegram] Sent {path.name}")


def success_message(archive: Path, size: int, upload_status: str | None, when: datetime | None = None) -> str:
    when = when or datetime.now(UTC)
    lines = [
        "🔄 *N8N Backup Completed*",
        f"📅 Date: {when.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"📦 File: `{archive.name}`",
        f"💾 Size: {format_size(size)}",
        "📊 Status: ✅ Success",
    ]
    if size >= TELEGRAM_FILE_LIMIT:
        lines.append(f"📎 File not attached (over the {format_size(TELEGRAM_FILE_LIMIT)} Telegram limit)")
    if upload_status:
        lines.append(f"☁️ Remote: {escape_markdown(upload_status)}")
    return "\n".join(lines)


def failure_message(step: str, error: str, when: datetime | None = None) -> str:
    when = when or datetime.now(UTC)
    return "\n".join(
        [
            "❌ *N8N Backup Failed*",
            f"📅 Date: {when.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            f"🧩 Step: {escape_markdown(step)}",
            f"⚠️ Error: {escape_markdown(error)}",
        ]
    )


def deliver_archive(notifier: Notifier, archive: Path, size: int, upload_status: str | None = None) -> tuple[bool, list[TransportError]]:
    """Send the archive (when under the size limit) and always the status message.

    Returns (file_sent, errors). Errors are collected, never raised.
    """
    errors: list[TransportError] = []
    file_sent = False

    if size < TELEGRAM_FILE_LIMIT:
        try:
            notifier.send_document(archive, caption=f"N8N backup {archive.name}")
            file_sent = True
        except TransportError as e:
            logger.warning(f"[telegram] {e}")
            errors.append(e)
    else:
        logger.info(f"[telegram] {archive.name} is {format_size(size)}; sending status only")

    try:
        notifier.send_message(success_message(archive, size, upload_status))
    except TransportError as e:
        logger.warning(f"[telegram] {e}")
        errors.append(e)

    return file_sent, errors

"""Pytest configuration and fixtures for n8n-backup tests."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from n8n_backup.config import BackupConfig, DatabaseKind, PostgresCredentials
from n8n_backup.errors import CommandError, TransportError
from n8n_backup.polling import PollingPolicy
from n8n_backup.storage import RemoteEntry

SQLITE_BYTES = b"SQLite format 3\x00" + bytes(range(256)) * 64


class FakePostgresBackend:
    """Stands in for pg_dump / pg_isready / psql."""

    kind = DatabaseKind.postgres

    def __init__(self, ready=True, sql=b"CREATE TABLE workflow_entity (id int);\n"):
        self.ready = ready
        self.sql = sql
        self.dumps = 0
        self.ready_checks = 0
        self.replayed: list[bytes] = []

    def dump(self, dest: Path) -> int:
        self.dumps += 1
        dest.write_bytes(self.sql)
        return len(self.sql)

    def is_ready(self) -> bool:
        self.ready_checks += 1
        return self.ready

    def replay(self, payload: Path) -> None:
        self.replayed.append(payload.read_bytes())


class FakeRemote:
    """In-memory remote store."""

    label = "fake:n8n_backups"

    def __init__(self, fail_upload=False, fail_delete=False):
        self.files: dict[str, bytes] = {}
        self.fail_upload = fail_upload
        self.fail_delete = fail_delete
        self.delete_calls: list[int] = []

    def list_archives(self) -> list[RemoteEntry]:
        entries = [RemoteEntry(name=name, size=len(data)) for name, data in self.files.items()]
        return sorted(entries, key=lambda e: e.name, reverse=True)

    def download(self, name: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.files[name])
        return dest

    def upload(self, path: Path) -> str:
        if self.fail_upload:
            raise CommandError("rclone copy failed: quota exceeded")
        self.files[path.name] = path.read_bytes()
        return f"{self.label}/{path.name}"

    def delete_older_than(self, days: int) -> int:
        self.delete_calls.append(days)
        if self.fail_delete:
            raise CommandError("rclone delete failed")
        return 0


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages: list[str] = []
        self.documents: list[Path] = []

    def send_message(self, text: str) -> None:
        if self.fail:
            raise TransportError("Telegram sendMessage failed: ConnectError")
        self.messages.append(text)

    def send_document(self, path: Path, caption: str = "") -> None:
        if self.fail:
            raise TransportError("Telegram sendDocument failed: ConnectError")
        self.documents.append(path)


class FakeCompose:
    def __init__(self):
        self.calls: list[tuple] = []

    def up(self, *services):
        self.calls.append(("up", *services))

    def stop(self, *services):
        self.calls.append(("stop", *services))

    def is_running(self, service):
        return False


def make_install(root: Path, sqlite: bytes | None = SQLITE_BYTES) -> Path:
    """Lay out an install dir the way the installer does."""
    files = root / "files"
    files.mkdir(parents=True)
    if sqlite is not None:
        (files / "database.sqlite").write_bytes(sqlite)
    (files / "encryptionKey").write_text("s3cr3t-key")
    (root / "docker-compose.yml").write_text("services:\n  n8n:\n    image: n8nio/n8n\n")
    (root / "Caddyfile").write_text("n8n.example.com {\n  reverse_proxy n8n:5678\n}\n")
    return root


def make_config(root: Path, work: Path, **overrides) -> BackupConfig:
    values = dict(
        install_dir=root,
        data_dir=root / "files",
        backup_dir=root / "files" / "backup_full",
        log_file=root / "logs" / "backup.log",
        work_dir=work,
        app_container="",
        postgres=PostgresCredentials(user="n8n", password="pw", database="n8n"),
        ready_attempts=3,
        ready_interval=0,
    )
    values.update(overrides)
    return BackupConfig(**values)


@pytest.fixture
def install_dir(tmp_path):
    """A SQLite install with database, key and config files."""
    return make_install(tmp_path / "install")


@pytest.fixture
def config(tmp_path, install_dir):
    return make_config(install_dir, tmp_path / "work")


@pytest.fixture
def postgres_config(tmp_path):
    root = make_install(tmp_path / "pg_install", sqlite=None)
    (root / ".env").write_text('POSTGRES_USER="n8n"\nPOSTGRES_PASSWORD="pw"\nPOSTGRES_DB="n8n"\n')
    return make_config(root, tmp_path / "work", database_kind=DatabaseKind.postgres)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def no_sleep_polling(sleeps):
    """Polling policy that records sleeps instead of sleeping."""
    return PollingPolicy(max_attempts=3, interval=5, sleep=sleeps.append)


@pytest.fixture
def fake_postgres():
    return FakePostgresBackend()


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def fake_compose():
    return FakeCompose()


@pytest.fixture
def fixed_now():
    return datetime(2024, 1, 15, 2, 0, 0, tzinfo=UTC)


def populate_archives(backup_dir: Path, count: int, start: datetime) -> list[Path]:
    """Create ``count`` dummy archives one hour apart, oldest first."""
    backup_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(count):
        ts = start + timedelta(hours=i)
        path = backup_dir / f"n8n_backup_{ts.strftime('%Y%m%d_%H%M%S')}.tar.gz"
        path.write_bytes(b"x")
        paths.append(path)
    return paths


@pytest.fixture
def unready_postgres():
    return FakePostgresBackend(ready=False)


@pytest.fixture
def failing_remote():
    return FakeRemote(fail_upload=True, fail_delete=True)


@pytest.fixture
def failing_notifier():
    return FakeNotifier(fail=True)


@pytest.fixture
def install_factory():
    return make_install


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def populate():
    return populate_archives

"""Tests for the restorer."""

import io
import json
import os
import tarfile

import pytest

from n8n_backup.backup import run_backup
from n8n_backup.config import DatabaseKind
from n8n_backup.errors import (
    AmbiguousBackupError,
    DatabaseNotReadyError,
    InvalidArchiveError,
    LockError,
    SelectionError,
)
from n8n_backup.lock import run_lock
from n8n_backup.restore import Restorer, RestoreRequest, RestoreSource


def _snapshot_tree(root):
    """Map of relative path -> bytes for every file under root."""
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def _write_archive(path, files):
    """Build a tar.gz from a {member name: bytes} dict."""
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def sqlite_archive(config, fixed_now):
    return run_backup(config, now=fixed_now, version_probe=lambda c: "1.0.0").archive


@pytest.fixture
def postgres_archive(postgres_config, fake_postgres, fixed_now):
    return run_backup(postgres_config, backend=fake_postgres, now=fixed_now, version_probe=lambda c: "1.0.0").archive


@pytest.fixture
def target_config(tmp_path, config_factory):
    """An empty install to restore into."""
    root = tmp_path / "target"
    return config_factory(root, tmp_path / "restore_work")


class TestSqliteRestore:
    """Restoring SQLite archives."""

    def test_roundtrip(self, config, sqlite_archive, fake_compose):
        """Restoring over a modified install brings the original bytes back."""
        original = (config.data_dir / "database.sqlite").read_bytes()
        (config.data_dir / "database.sqlite").write_bytes(b"modified since backup")
        (config.install_dir / "Caddyfile").write_text("changed\n")

        report = Restorer(config, compose=fake_compose).restore(sqlite_archive)

        assert report.database_kind is DatabaseKind.sqlite
        assert (config.data_dir / "database.sqlite").read_bytes() == original
        assert (config.data_dir / "database.sqlite.bak").read_bytes() == b"modified since backup"
        assert (config.install_dir / "Caddyfile.bak").read_text() == "changed\n"
        assert (config.install_dir / "Caddyfile").read_text().startswith("n8n.example.com")
        assert (config.data_dir / "encryptionKey").read_text() == "s3cr3t-key"
        assert fake_compose.calls == []

    def test_into_empty_install(self, sqlite_archive, target_config, fake_compose):
        report = Restorer(target_config, compose=fake_compose).restore(sqlite_archive)

        assert (target_config.data_dir / "database.sqlite").is_file()
        assert (target_config.install_dir / "docker-compose.yml").is_file()
        assert report.backups == []
        assert oct((target_config.data_dir / "database.sqlite").stat().st_mode & 0o777) == "0o644"

    def test_temp_dirs_removed(self, sqlite_archive, target_config, fake_compose):
        Restorer(target_config, compose=fake_compose).restore(sqlite_archive)
        assert list(target_config.work_dir.iterdir()) == []

    def test_start_services(self, sqlite_archive, target_config, fake_compose):
        Restorer(target_config, compose=fake_compose).restore(sqlite_archive, start=True)
        assert fake_compose.calls == [("up",)]


class TestInvalidArchives:
    def test_corrupt_archive_leaves_install_untouched(self, config, fake_compose, tmp_path):
        """Random bytes fail validation before anything is written."""
        path = tmp_path / "n8n_backup_20240115_020000.tar.gz"
        path.write_bytes(os.urandom(4096))
        before = _snapshot_tree(config.install_dir)

        with pytest.raises(InvalidArchiveError) as exc_info:
            Restorer(config, compose=fake_compose).restore(path)

        assert exc_info.value.step == "validate"
        assert _snapshot_tree(config.install_dir) == before
        assert fake_compose.calls == []

    def test_both_payloads_ambiguous(self, target_config, fake_compose, tmp_path):
        path = _write_archive(
            tmp_path / "n8n_backup_20240115_020000.tar.gz",
            {
                "n8n_backup_20240115_020000/credentials/database.sqlite": b"sqlite",
                "n8n_backup_20240115_020000/credentials/database.sql": b"SELECT 1;",
            },
        )

        with pytest.raises(AmbiguousBackupError, match="both") as exc_info:
            Restorer(target_config, compose=fake_compose).restore(path)

        assert exc_info.value.step == "classify"
        assert not (target_config.data_dir / "database.sqlite").exists()

    def test_no_payload_ambiguous(self, target_config, fake_compose, tmp_path):
        path = _write_archive(
            tmp_path / "n8n_backup_20240115_020000.tar.gz",
            {"n8n_backup_20240115_020000/credentials/encryptionKey": b"key"},
        )

        with pytest.raises(AmbiguousBackupError, match="no database payload"):
            Restorer(target_config, compose=fake_compose).restore(path)

    def test_manifest_mismatch(self, target_config, fake_compose, tmp_path):
        manifest = {
            "backup_name": "n8n_backup_20240115_020000",
            "backup_date": "2024-01-15T02:00:00Z",
            "database_kind": "postgres",
        }
        path = _write_archive(
            tmp_path / "n8n_backup_20240115_020000.tar.gz",
            {
                "n8n_backup_20240115_020000/credentials/database.sqlite": b"sqlite",
                "n8n_backup_20240115_020000/backup_metadata.json": json.dumps(manifest).encode(),
            },
        )

        with pytest.raises(AmbiguousBackupError, match="Manifest says postgres"):
            Restorer(target_config, compose=fake_compose).restore(path)

    def test_unexpected_structure(self, target_config, fake_compose, tmp_path):
        path = _write_archive(tmp_path / "other.tar.gz", {"random/file.txt": b"x"})

        with pytest.raises(AmbiguousBackupError, match="Invalid backup structure"):
            Restorer(target_config, compose=fake_compose).restore(path)

    def test_flat_layout_accepted(self, target_config, fake_compose, tmp_path):
        """Archives without the top-level directory still restore."""
        path = _write_archive(
            tmp_path / "flat.tar.gz",
            {"credentials/database.sqlite": b"flat sqlite"},
        )

        Restorer(target_config, compose=fake_compose).restore(path)

        assert (target_config.data_dir / "database.sqlite").read_bytes() == b"flat sqlite"

    def test_locked(self, config, sqlite_archive, fake_compose):
        with run_lock(config.lock_path):
            with pytest.raises(LockError):
                Restorer(config, compose=fake_compose).restore(sqlite_archive)


class TestPostgresRestore:
    """Restoring PostgreSQL archives."""

    def test_replays_dump(self, postgres_config, postgres_archive, fake_postgres, fake_compose, no_sleep_polling):
        seen = []

        def factory(cfg):
            seen.append(cfg)
            return fake_postgres

        restorer = Restorer(postgres_config, compose=fake_compose, polling=no_sleep_polling, backend_factory=factory)
        report = restorer.restore(postgres_archive)

        assert report.database_kind is DatabaseKind.postgres
        assert fake_postgres.replayed == [fake_postgres.sql]
        assert fake_compose.calls == [("stop", "n8n"), ("up", "postgres")]
        assert seen[0].postgres.user == "n8n"
        assert seen[0].postgres.password == "pw"

    def test_uses_archived_credentials(
        self, postgres_config, postgres_archive, fake_postgres, fake_compose, no_sleep_polling
    ):
        """The archived .env wins over the currently configured credentials."""
        (postgres_config.install_dir / ".env").write_text('POSTGRES_USER="other"\nPOSTGRES_PASSWORD="new"\n')
        seen = []

        def factory(cfg):
            seen.append(cfg)
            return fake_postgres

        Restorer(postgres_config, compose=fake_compose, polling=no_sleep_polling, backend_factory=factory).restore(
            postgres_archive
        )

        assert seen[0].postgres.password == "pw"
        assert (postgres_config.install_dir / ".env.bak").read_text().startswith('POSTGRES_USER="other"')

    def test_not_ready_never_replays(
        self, postgres_config, postgres_archive, unready_postgres, fake_compose, no_sleep_polling, sleeps
    ):
        """When the database never comes up the dump is not replayed."""
        restorer = Restorer(
            postgres_config,
            compose=fake_compose,
            polling=no_sleep_polling,
            backend_factory=lambda cfg: unready_postgres,
        )

        with pytest.raises(DatabaseNotReadyError) as exc_info:
            restorer.restore(postgres_archive)

        assert exc_info.value.step == "apply"
        assert unready_postgres.replayed == []
        assert unready_postgres.ready_checks == 3
        assert sleeps == [5, 5]
        assert fake_compose.calls == [("stop", "n8n"), ("up", "postgres")]


class TestSelection:
    """Selecting the archive to restore."""

    def test_missing_local_file(self, config, fake_compose, tmp_path):
        request = RestoreRequest(source=RestoreSource.local_path, location=str(tmp_path / "missing.tar.gz"))

        with pytest.raises(SelectionError) as exc_info:
            Restorer(config, compose=fake_compose).run(request)

        assert exc_info.value.step == "select"

    def test_remote_by_index(self, sqlite_archive, target_config, fake_remote, fake_compose):
        fake_remote.files["n8n_backup_20240101_020000.tar.gz"] = b"old and broken"
        fake_remote.files[sqlite_archive.name] = sqlite_archive.read_bytes()

        restorer = Restorer(target_config, compose=fake_compose, remote=fake_remote)
        report = restorer.run(RestoreRequest(source=RestoreSource.remote_name, select=1))

        assert report.archive.name == sqlite_archive.name
        assert (target_config.data_dir / "database.sqlite").is_file()

    def test_remote_by_name(self, sqlite_archive, target_config, fake_remote, fake_compose):
        fake_remote.files[sqlite_archive.name] = sqlite_archive.read_bytes()

        restorer = Restorer(target_config, compose=fake_compose, remote=fake_remote)
        restorer.run(RestoreRequest(source=RestoreSource.remote_name, location=sqlite_archive.name))

        assert (target_config.data_dir / "database.sqlite").is_file()

    def test_remote_interactive_choice(self, sqlite_archive, target_config, fake_remote, fake_compose):
        fake_remote.files[sqlite_archive.name] = sqlite_archive.read_bytes()
        offered = []

        def choose(entries):
            offered.extend(e.name for e in entries)
            return 1

        restorer = Restorer(target_config, compose=fake_compose, remote=fake_remote)
        restorer.run(RestoreRequest(source=RestoreSource.remote_name), choose=choose)

        assert offered == [sqlite_archive.name]

    def test_remote_name_not_found(self, target_config, fake_remote, fake_compose):
        fake_remote.files["n8n_backup_20240101_020000.tar.gz"] = b"x"
        restorer = Restorer(target_config, compose=fake_compose, remote=fake_remote)

        with pytest.raises(SelectionError, match="not found"):
            restorer.run(RestoreRequest(source=RestoreSource.remote_name, location="n8n_backup_nope.tar.gz"))

    def test_remote_index_out_of_range(self, target_config, fake_remote, fake_compose):
        fake_remote.files["n8n_backup_20240101_020000.tar.gz"] = b"x"
        restorer = Restorer(target_config, compose=fake_compose, remote=fake_remote)

        with pytest.raises(SelectionError, match="Invalid choice"):
            restorer.run(RestoreRequest(source=RestoreSource.remote_name, select=5))

    def test_empty_remote(self, target_config, fake_remote, fake_compose):
        restorer = Restorer(target_config, compose=fake_compose, remote=fake_remote)

        with pytest.raises(SelectionError, match="No backup files"):
            restorer.run(RestoreRequest(source=RestoreSource.remote_name, select=1))

    def test_no_remote_configured(self, target_config, fake_compose):
        with pytest.raises(SelectionError, match="No remote store"):
            Restorer(target_config, compose=fake_compose).run(RestoreRequest(source=RestoreSource.remote_name))

"""Tests for the migration runner."""

from unittest.mock import MagicMock, patch

import pytest

from sitecorpus.db import migrate
from sitecorpus.db.migrate import MIGRATIONS_DIR, migration_files, run_migrations


class TestMigrationFiles:
    def test_bundled_migrations_are_found(self):
        files = migration_files()

        assert files[0].name == "001_initial.sql"
        assert all(f.parent == MIGRATIONS_DIR for f in files)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(SystemExit, match="not found"):
            migration_files(tmp_path / "nope")

    def test_empty_directory(self, tmp_path):
        with pytest.raises(SystemExit, match="No .sql files"):
            migration_files(tmp_path)

    def test_files_are_sorted(self, tmp_path):
        for name in ("002_b.sql", "001_a.sql", "notes.txt"):
            (tmp_path / name).write_text("select 1;")

        assert [f.name for f in migration_files(tmp_path)] == ["001_a.sql", "002_b.sql"]


class TestRunMigrations:
    def test_requires_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with patch.object(migrate, "load_dotenv"):
            with pytest.raises(SystemExit, match="DATABASE_URL is not set"):
                run_migrations()

    def test_applies_each_file(self, monkeypatch):
        psycopg = pytest.importorskip("psycopg")
        cursor = MagicMock()
        conn = MagicMock()
        conn.__enter__.return_value = conn
        conn.cursor.return_value.__enter__.return_value = cursor

        with patch.object(migrate, "load_dotenv"), patch.object(
            psycopg, "connect", return_value=conn
        ) as connect:
            run_migrations("postgresql://localhost/test")

        connect.assert_called_once_with("postgresql://localhost/test", autocommit=True)
        assert cursor.execute.call_count == len(migration_files())

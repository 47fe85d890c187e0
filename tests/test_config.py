"""Tests for application settings."""

import pytest

from fhirstore.config import DuplicatePolicy, Settings
from fhirstore.database import engine_options


class TestSettings:
    """Tests for Settings loading."""

    def test_environment_overrides(self, monkeypatch):
        """Policies and limits are read from the environment."""
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://app:secret@db:5432/fhirstore")
        monkeypatch.setenv("DUPLICATE_POLICY", "reject")
        monkeypatch.setenv("MAX_PAGE_SIZE", "25")

        config = Settings()

        assert config.duplicate_policy is DuplicatePolicy.REJECT
        assert config.max_page_size == 25

    def test_unconfigured_database_warns(self, monkeypatch):
        """The CHANGE_ME sentinel triggers a warning."""
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.warns(UserWarning, match="DATABASE_URL not configured"):
            Settings(_env_file=None)


class TestEngineOptions:
    """Tests for engine keyword arguments per backend."""

    def test_postgres_gets_pool_and_isolation(self):
        options = engine_options("postgresql+asyncpg://u:p@h/db")
        assert options["isolation_level"] == "READ COMMITTED"
        assert "pool_size" in options

    def test_sqlite_gets_defaults(self):
        options = engine_options("sqlite+aiosqlite:///tmp.db")
        assert "pool_size" not in options
        assert "isolation_level" not in options

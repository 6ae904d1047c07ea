"""
Pytest configuration for stockwatch.

Provides fixtures for:
- Settings built without reading the environment's `.env` file
- An in-memory stand-in for psycopg async connections
- Database connection management for the integration tests
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

import psycopg
import pytest

from stockwatch.config import Settings
from tests.fakes import FakeDatabase


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """
    Factory for Settings isolated from `.env`, with fast pacing defaults.
    """

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "batch_pause_ms": 0,
            "adaptive_interval_enabled": False,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings for the integration tests.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        _env_file=None,
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "busy_test"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False

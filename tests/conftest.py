"""Pytest configuration for test isolation.

Settings are read from the environment (and a local ``.env`` in the CLI), so a
developer's ``DATABASE_URL`` or worker settings could leak into tests. An
autouse fixture clears every variable the engine reads, and SQLAlchemy engines
cached by ``db.client`` are disposed after each test so file-backed SQLite
databases under ``tmp_path`` are released.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from db.client import dispose_engines
from recurring_engine.api import RecurringEngine, build_engine, build_in_memory_engine
from recurring_engine.config import EngineSettings

from tests.helpers.db import bootstrap_sqlite_db

_ENGINE_ENV_VARS = (
    "DATABASE_URL",
    "RECURRING_MAX_WORKERS",
    "RECURRING_DEFAULT_CURRENCY",
    "RECURRING_DEADLINE_SECONDS",
    "RECURRING_ENGINE_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Drop engine settings from the environment and run from ``tmp_path``.

    Running from ``tmp_path`` keeps the CLI's ``load_dotenv`` from picking up
    a ``.env`` in the working tree.
    """

    for name in _ENGINE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def _dispose_db_engines():
    yield
    dispose_engines()


@pytest.fixture()
def engine() -> RecurringEngine:
    return build_in_memory_engine(settings=EngineSettings(max_workers=4))


@pytest.fixture()
def sqlite_url(tmp_path: Path) -> str:
    return bootstrap_sqlite_db(tmp_path / "db" / "test.sqlite3")


@pytest.fixture()
def sql_engine(sqlite_url: str) -> RecurringEngine:
    # One worker: SQLite serializes writers and lock upgrades fail fast.
    return build_engine(sqlite_url, settings=EngineSettings(max_workers=1))

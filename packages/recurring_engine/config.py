"""Environment-driven settings.

Entrypoints call ``load_dotenv()`` first (the CLI does it in its root
callback) so a local ``.env`` can supply any of these:

- ``DATABASE_URL``: SQLAlchemy URL for the SQL-backed repository.
- ``RECURRING_MAX_WORKERS``: catch-up worker threads (default 4, capped to 1..32).
- ``RECURRING_DEFAULT_CURRENCY``: currency for rules created without one (``EUR``).
- ``RECURRING_DEADLINE_SECONDS``: optional time budget for a catch-up run.
- ``RECURRING_ENGINE_LOG_LEVEL``: log level used by ``configure_logging``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from .logging_setup import get_logger

logger = get_logger("recurring_engine.config")

DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_CAP = 32


@dataclass(frozen=True, slots=True)
class EngineSettings:
    database_url: str | None = None
    max_workers: int = DEFAULT_MAX_WORKERS
    default_currency: str = "EUR"
    deadline_seconds: float | None = None
    log_level: str | None = None


def _resolve_max_workers(raw: str | None) -> int:
    try:
        value = int(raw) if raw else None
    except ValueError:
        logger.warning("Ignoring non-integer RECURRING_MAX_WORKERS=%r", raw)
        value = None
    if value is None or value <= 0:
        return DEFAULT_MAX_WORKERS
    return max(1, min(value, MAX_WORKERS_CAP))


def _resolve_deadline(raw: str | None) -> float | None:
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric RECURRING_DEADLINE_SECONDS=%r", raw)
        return None
    return value if value > 0 else None


def load_settings(env: Mapping[str, str] | None = None) -> EngineSettings:
    """Build :class:`EngineSettings` from ``env`` (defaults to ``os.environ``)."""

    env = os.environ if env is None else env
    currency = (env.get("RECURRING_DEFAULT_CURRENCY") or "EUR").strip().upper()
    return EngineSettings(
        database_url=env.get("DATABASE_URL") or None,
        max_workers=_resolve_max_workers(env.get("RECURRING_MAX_WORKERS")),
        default_currency=currency or "EUR",
        deadline_seconds=_resolve_deadline(env.get("RECURRING_DEADLINE_SECONDS")),
        log_level=env.get("RECURRING_ENGINE_LOG_LEVEL") or None,
    )


__all__ = ["EngineSettings", "load_settings"]

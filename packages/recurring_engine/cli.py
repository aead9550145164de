# ruff: noqa: I001
"""CLI for the ``recurring_engine`` package.

A Typer console interface over :class:`recurring_engine.api.RecurringEngine`
backed by the shared database. Environment variables (notably
``DATABASE_URL``) are loaded from a local ``.env`` using ``python-dotenv``
before any command runs. Every command prints JSON on stdout; failures print an
``Error: ...`` line on stderr and exit non-zero.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import typer
from dotenv import load_dotenv

from .errors import NotFoundError, RecurringEngineError, ValidationError
from .logging_setup import configure_logging, get_logger

logger = get_logger("recurring_engine.cli")

T = TypeVar("T")

_DATE_FORMATS = ["%Y-%m-%d"]


# ---- Small module-level helpers used by CLI commands ------------------------


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, default=_json_default, indent=2, sort_keys=True))


def _rule_payload(rule: Any) -> dict[str, Any]:
    data = asdict(rule)
    data["kind"] = rule.kind
    return data


def _exit_code(exc: Exception) -> int:
    if isinstance(exc, ValidationError):
        return 2
    if isinstance(exc, NotFoundError):
        return 3
    return 1


def _run(fn: Callable[[], T]) -> T:
    """Run a command body, mapping engine failures to ``Error:`` + exit code."""

    try:
        return fn()
    except (RecurringEngineError, RuntimeError) as e:
        logger.debug("Command failed", exc_info=True)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(_exit_code(e)) from e


def _load_json(inline: str | None, path: Path | None, *, what: str) -> dict[str, Any]:
    if (inline is None) == (path is None):
        typer.echo(f"Error: pass exactly one of --{what}-json or --{what}-file", err=True)
        raise typer.Exit(2)
    try:
        raw = inline if inline is not None else path.read_text(encoding="utf-8")
    except OSError as e:
        typer.echo(f"Error: cannot read {path}: {e}", err=True)
        raise typer.Exit(2) from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: invalid JSON for {what}: {e}", err=True)
        raise typer.Exit(2) from e
    if not isinstance(data, dict):
        typer.echo(f"Error: {what} must be a JSON object", err=True)
        raise typer.Exit(2)
    return data


def _as_date(value: datetime | None) -> date | None:
    return value.date() if value is not None else None


def _engine(database_url: str | None):
    from .api import build_engine

    return build_engine(database_url)


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Manage recurring transaction rules and installment plans, and run the "
        "catch-up generator. Loads DATABASE_URL from a local .env before running."
    ),
)


@app.command("create-rule")
def create_rule_cmd(
    spec_json: str | None = typer.Option(None, help="Rule spec as an inline JSON object."),
    spec_file: Path | None = typer.Option(
        None, help="Path to a JSON file holding the rule spec.", dir_okay=False
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Create a rule; prints the stored rule."""

    spec = _load_json(spec_json, spec_file, what="spec")
    rule = _run(lambda: _engine(database_url).create_rule(spec))
    _emit(_rule_payload(rule))


@app.command("update-rule")
def update_rule_cmd(
    rule_id: str = typer.Argument(..., help="Rule identifier."),
    changes_json: str | None = typer.Option(None, help="Changes as an inline JSON object."),
    changes_file: Path | None = typer.Option(
        None, help="Path to a JSON file holding the changes.", dir_okay=False
    ),
    delete_future: bool = typer.Option(
        False, help="Delete already generated occurrences dated after --today."
    ),
    today: datetime | None = typer.Option(
        None, formats=_DATE_FORMATS, help="Reference date for 'future' (default: today)."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Apply a partial update to a rule."""

    changes = _load_json(changes_json, changes_file, what="changes")
    rule = _run(
        lambda: _engine(database_url).update_rule(
            rule_id,
            changes,
            delete_future_transactions=delete_future,
            today=_as_date(today),
        )
    )
    _emit(_rule_payload(rule))


@app.command("delete-rule")
def delete_rule_cmd(
    rule_id: str = typer.Argument(..., help="Rule identifier."),
    delete_future: bool = typer.Option(
        False, help="Also delete occurrences dated after --today."
    ),
    today: datetime | None = typer.Option(
        None, formats=_DATE_FORMATS, help="Reference date for 'future' (default: today)."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Soft-delete a rule. Past occurrences are kept."""

    _run(
        lambda: _engine(database_url).delete_rule(
            rule_id, delete_future_transactions=delete_future, today=_as_date(today)
        )
    )
    _emit({"id": rule_id, "deleted": True})


@app.command("pause")
def pause_cmd(
    rule_id: str = typer.Argument(..., help="Rule identifier."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Stop generating occurrences for a rule."""

    _emit(_rule_payload(_run(lambda: _engine(database_url).pause_rule(rule_id))))


@app.command("resume")
def resume_cmd(
    rule_id: str = typer.Argument(..., help="Rule identifier."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Resume a paused rule."""

    _emit(_rule_payload(_run(lambda: _engine(database_url).resume_rule(rule_id))))


@app.command("show-rule")
def show_rule_cmd(
    rule_id: str = typer.Argument(..., help="Rule identifier."),
    occurrences: bool = typer.Option(False, help="Include generated occurrences."),
    preview: int = typer.Option(0, min=0, help="Include the next N upcoming occurrences."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Print one rule, optionally with its occurrences and upcoming ones."""

    def _show() -> dict[str, Any]:
        engine = _engine(database_url)
        payload = _rule_payload(engine.get_rule(rule_id))
        if occurrences:
            payload["occurrences"] = engine.list_occurrences(rule_id)
        if preview:
            payload["upcoming"] = engine.preview_rule(rule_id, limit=preview)
        return payload

    _emit(_run(_show))


@app.command("list-rules")
def list_rules_cmd(
    owner_id: str = typer.Argument(..., help="Owner identifier."),
    installment: bool | None = typer.Option(
        None,
        "--installment/--recurring",
        help="Only installment plans, or only open-ended rules (default: both).",
    ),
    include_deleted: bool = typer.Option(False, help="Include soft-deleted rules."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """List an owner's rules."""

    rules = _run(
        lambda: _engine(database_url).list_rules(
            owner_id, is_installment=installment, include_deleted=include_deleted
        )
    )
    _emit([_rule_payload(r) for r in rules])


@app.command("summary")
def summary_cmd(
    rule_id: str = typer.Argument(..., help="Installment rule identifier."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Print the installment summary (paid, remaining, next amount)."""

    _emit(_run(lambda: _engine(database_url).installment_summary(rule_id)))


@app.command("catch-up")
def catch_up_cmd(
    as_of: datetime | None = typer.Option(
        None,
        formats=_DATE_FORMATS,
        help="Generate everything due up to this date (default: today).",
    ),
    deadline: float | None = typer.Option(
        None, min=0.0, help="Time budget in seconds (falls back to RECURRING_DEADLINE_SECONDS)."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Generate due occurrences for every active rule."""

    report = _run(
        lambda: _engine(database_url).run_catch_up(_as_date(as_of), deadline=deadline)
    )
    payload: dict[str, Any] = report.summary()
    payload["occurrences"] = {k: v for k, v in report.created.items() if v}
    payload["errors"] = {k: str(v) for k, v in report.failed.items()}
    _emit(payload)
    if report.failed:
        raise typer.Exit(1)


@app.command("health")
def health_cmd(
    strict: bool = typer.Option(False, help="Also exit non-zero when the engine is degraded."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Check database connectivity and catch-up job health."""

    health = _run(lambda: _engine(database_url).health())
    _emit(health)
    if not health.ok or (strict and health.overall != "healthy"):
        raise typer.Exit(1)


@app.callback()
def _root() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    # Running as a module: `python -m recurring_engine.cli`
    app()

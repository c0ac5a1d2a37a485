"""CLI entrypoint for agent-sessions."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_sessions import __version__
from agent_sessions.sessions.controllers import (
    SessionCliController,
    SessionCreateCommand,
    SessionEventsCommand,
    SessionListCommand,
    SessionLogCommand,
    SessionModeCommand,
    SessionRefCommand,
    SessionRunCommand,
    SessionSubmitCommand,
)
from agent_sessions.sessions.errors import SessionError
from agent_sessions.sessions.models import ExecutionMode, ResultStatus, SessionStatus
from agent_sessions.sessions.workflows import default_workflows

click.rich_click.USE_MARKDOWN = True
SESSION_CONTROLLER = SessionCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-sessions")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity.",
)
def agent_sessions(log_level: str) -> None:
    """Session orchestration engine for CLI coding agents."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_sessions.group()
def sessions() -> None:
    """Session lifecycle commands."""


@sessions.command("create")
@DB_PATH_OPTION
@click.option(
    "--type",
    "session_type",
    type=click.Choice(sorted(default_workflows())),
    required=True,
    help="Session type (selects the workflow).",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ExecutionMode]),
    default=ExecutionMode.MANUAL.value,
    show_default=True,
    help="`auto` continues on its own after each step.",
)
@click.option("--state", "state_json", default=None, help="Initial state as a JSON object.")
@click.option(
    "--state-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read initial state from a JSON file.",
)
@click.option("--parent", "parent_session_id", default=None, help="Parent session id.")
@click.option("--component-id", default=None, help="Component the session works on.")
def sessions_create(  # noqa: PLR0913
    db_path: Path | None,
    session_type: str,
    mode: str,
    state_json: str | None,
    state_file: Path | None,
    parent_session_id: str | None,
    component_id: str | None,
) -> None:
    """Create a new session."""

    _run(
        lambda: SESSION_CONTROLLER.create(
            SessionCreateCommand(
                db_path=db_path,
                session_type=session_type,
                execution_mode=mode,
                state_json=state_json,
                state_file=state_file,
                parent_session_id=parent_session_id,
                component_id=component_id,
            ),
        ),
    )


@sessions.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in SessionStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max sessions to print.",
)
def sessions_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent sessions."""

    _run(
        lambda: SESSION_CONTROLLER.list_sessions(
            SessionListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@sessions.command("show")
@DB_PATH_OPTION
@click.argument("session_id")
def sessions_show(db_path: Path | None, session_id: str) -> None:
    """Show one session with its interaction history."""

    _run(lambda: SESSION_CONTROLLER.show(SessionRefCommand(db_path=db_path, session_id=session_id)))


@sessions.command("next")
@DB_PATH_OPTION
@click.argument("session_id")
def sessions_next(db_path: Path | None, session_id: str) -> None:
    """Print the session's pending command, creating it if needed."""

    _run(
        lambda: SESSION_CONTROLLER.next_command(
            SessionRefCommand(db_path=db_path, session_id=session_id),
        ),
    )


@sessions.command("submit")
@DB_PATH_OPTION
@click.argument("session_id")
@click.option("--interaction-id", default=None, help="Defaults to the open interaction.")
@click.option(
    "--result-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Result as a JSON object (status, data, exit_code, stdout, stderr, error_message).",
)
@click.option(
    "--status",
    type=click.Choice([status.value for status in ResultStatus]),
    default=ResultStatus.OK.value,
    show_default=True,
    help="Result status when no result file is given.",
)
@click.option("--exit-code", type=int, default=None, help="Exit code of the command.")
@click.option("--error-message", default=None, help="Error detail for failed results.")
def sessions_submit(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str,
    interaction_id: str | None,
    result_file: Path | None,
    status: str,
    exit_code: int | None,
    error_message: str | None,
) -> None:
    """Report the result of the session's open interaction."""

    _run(
        lambda: SESSION_CONTROLLER.submit(
            SessionSubmitCommand(
                db_path=db_path,
                session_id=session_id,
                interaction_id=interaction_id,
                result_file=result_file,
                status=status,
                exit_code=exit_code,
                error_message=error_message,
            ),
        ),
    )


@sessions.command("run")
@DB_PATH_OPTION
@click.argument("session_id")
@click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Directory commands run in. Defaults to the current directory.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop waiting after this many seconds.",
)
def sessions_run(
    db_path: Path | None,
    session_id: str,
    working_dir: Path | None,
    timeout_seconds: float | None,
) -> None:
    """Execute the next step; `auto` sessions (and their children) keep going until they settle."""

    _run(
        lambda: SESSION_CONTROLLER.run(
            SessionRunCommand(
                db_path=db_path,
                session_id=session_id,
                working_dir=working_dir,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@sessions.command("mode")
@DB_PATH_OPTION
@click.argument("session_id")
@click.argument("execution_mode", type=click.Choice([mode.value for mode in ExecutionMode]))
def sessions_mode(db_path: Path | None, session_id: str, execution_mode: str) -> None:
    """Switch a session between manual and auto execution."""

    _run(
        lambda: SESSION_CONTROLLER.set_mode(
            SessionModeCommand(db_path=db_path, session_id=session_id, execution_mode=execution_mode),
        ),
    )


@sessions.command("cancel")
@DB_PATH_OPTION
@click.argument("session_id")
def sessions_cancel(db_path: Path | None, session_id: str) -> None:
    """Cancel an active session."""

    _run(lambda: SESSION_CONTROLLER.cancel(SessionRefCommand(db_path=db_path, session_id=session_id)))


@sessions.command("events")
@DB_PATH_OPTION
@click.argument("interaction_id")
@click.argument(
    "events_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
)
def sessions_events(db_path: Path | None, interaction_id: str, events_file: Path) -> None:
    """Ingest progress events (a JSON object or array) for an interaction."""

    _run(
        lambda: SESSION_CONTROLLER.ingest_events(
            SessionEventsCommand(
                db_path=db_path,
                interaction_id=interaction_id,
                events_file=events_file,
            ),
        ),
    )


@sessions.command("log")
@DB_PATH_OPTION
@click.argument("session_id")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=5000),
    default=200,
    show_default=True,
    help="Max events to print.",
)
def sessions_log(db_path: Path | None, session_id: str, limit: int) -> None:
    """Print the session's event audit trail."""

    _run(
        lambda: SESSION_CONTROLLER.log(
            SessionLogCommand(db_path=db_path, session_id=session_id, limit=limit),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except SessionError as error:
        raise click.ClickException(f"[{error.code.value}] {error}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_sessions()

from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_sessions.main import agent_sessions

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("CLI"),
]

_SESSION_ID = re.compile(r"session_id=(?P<id>[0-9a-f-]{36})")
_INTERACTION_ID = re.compile(r"^Interaction: (?P<id>[0-9a-f-]{36})", re.MULTILINE)


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch, echo_agent_template: str) -> None:
    monkeypatch.setenv("AGENT_SESSIONS_AGENT_COMMAND_TEMPLATE", echo_agent_template)
    monkeypatch.setenv("AGENT_SESSIONS_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("AGENT_SESSIONS_RETRY_BASE_SECONDS", "0")
    for name in ("AGENT_SESSIONS_ACCOUNT_ID", "AGENT_SESSIONS_PROJECT_ID", "AGENT_SESSIONS_USER_ID"):
        monkeypatch.delenv(name, raising=False)


def _invoke(runner: CliRunner, db_path: Path, *args: str):
    command, *rest = args
    return runner.invoke(agent_sessions, ["sessions", command, "--db-path", str(db_path), *rest])


def _create(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = _invoke(runner, db_path, "create", *args)
    assert result.exit_code == 0, result.output
    match = _SESSION_ID.search(result.output)
    assert match is not None, result.output
    return match.group("id")


@pytest.mark.usefixtures("cli_env")
def test_manual_session_lifecycle(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    session_id = _create(
        runner,
        db_path,
        "--type",
        "basic",
        "--state",
        json.dumps({"name": "billing", "required_sections": ["Purpose"]}),
    )

    first = _invoke(runner, db_path, "next", session_id)
    assert first.exit_code == 0, first.output
    assert "Step: initialize" in first.output
    assert "Invocation: noop" in first.output

    again = _invoke(runner, db_path, "next", session_id)
    assert _INTERACTION_ID.search(again.output).group("id") == _INTERACTION_ID.search(first.output).group("id")

    submitted = _invoke(runner, db_path, "submit", session_id, "--exit-code", "0")
    assert submitted.exit_code == 0, submitted.output
    assert "session_status=active" in submitted.output
    assert "Step outcome: ok" in submitted.output

    generate = _invoke(runner, db_path, "next", session_id)
    assert "Step: generate_spec" in generate.output
    assert "Write a specification for billing." in generate.output

    shown = _invoke(runner, db_path, "show", session_id)
    assert shown.exit_code == 0, shown.output
    assert f"Session: {session_id} (Basic)" in shown.output
    assert "Status: active" in shown.output
    assert "Interactions: 2" in shown.output
    assert "generate_spec open" in shown.output

    listed = _invoke(runner, db_path, "list")
    assert "Sessions: 1" in listed.output
    assert f"{session_id} type=basic status=active mode=manual" in listed.output


@pytest.mark.usefixtures("cli_env")
def test_submit_failed_result_from_file(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    session_id = _create(runner, db_path, "--type", "basic")
    _invoke(runner, db_path, "next", session_id)
    result_file = tmp_path / "result.json"
    result_file.write_text(
        json.dumps({"status": "error", "exit_code": 2, "error_message": "setup failed"}),
        "utf-8",
    )

    submitted = _invoke(runner, db_path, "submit", session_id, "--result-file", str(result_file))

    assert submitted.exit_code == 0, submitted.output
    assert "Step outcome: error" in submitted.output
    assert "Error: Setup command exited with 2" in submitted.output
    retry = _invoke(runner, db_path, "next", session_id)
    assert "Step: initialize" in retry.output


@pytest.mark.usefixtures("cli_env")
def test_events_are_ingested_and_logged(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    session_id = _create(runner, db_path, "--type", "basic")
    interaction_id = _INTERACTION_ID.search(_invoke(runner, db_path, "next", session_id).output).group("id")
    events_file = tmp_path / "events.json"
    events_file.write_text(
        json.dumps(
            [
                {
                    "event_type": "conversation_started",
                    "sent_at": "2026-03-01T10:00:00Z",
                    "data": {"conversation_id": "conv-cli"},
                },
                {
                    "event_type": "tool_called",
                    "sent_at": "2026-03-01T10:00:05Z",
                    "data": {"tool_name": "Edit"},
                },
            ],
        ),
        "utf-8",
    )

    ingested = _invoke(runner, db_path, "events", interaction_id, str(events_file))
    logged = _invoke(runner, db_path, "log", session_id)

    assert ingested.exit_code == 0, ingested.output
    assert "Events recorded: 2" in ingested.output
    assert "conversation=conv-cli" in ingested.output
    assert "Events: 2" in logged.output
    assert "conversation_started" in logged.output
    assert '"tool_name": "Edit"' in logged.output


@pytest.mark.usefixtures("cli_env")
def test_invalid_event_file_is_rejected(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    session_id = _create(runner, db_path, "--type", "basic")
    interaction_id = _INTERACTION_ID.search(_invoke(runner, db_path, "next", session_id).output).group("id")
    events_file = tmp_path / "events.json"
    events_file.write_text(json.dumps({"event_type": "tool_called", "data": {}}), "utf-8")

    ingested = _invoke(runner, db_path, "events", interaction_id, str(events_file))

    assert ingested.exit_code != 0
    assert "[invalid_event]" in ingested.output


@pytest.mark.usefixtures("cli_env")
def test_cancelled_session_refuses_next_command(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    session_id = _create(runner, db_path, "--type", "basic")

    cancelled = _invoke(runner, db_path, "cancel", session_id)
    refused = _invoke(runner, db_path, "next", session_id)

    assert f"Session {session_id} status=cancelled" in cancelled.output
    assert refused.exit_code != 0
    assert "[cancelled]" in refused.output


@pytest.mark.usefixtures("cli_env")
def test_mode_switch_is_persisted(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    session_id = _create(runner, db_path, "--type", "basic")

    switched = _invoke(runner, db_path, "mode", session_id, "auto")
    shown = _invoke(runner, db_path, "show", session_id)

    assert f"Session {session_id} mode=auto" in switched.output
    assert "Mode: auto" in shown.output


@pytest.mark.usefixtures("cli_env")
def test_invalid_state_json_is_rejected(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), tmp_path / "cli.db", "create", "--type", "basic", "--state", "[1, 2]")

    assert result.exit_code != 0
    assert "Session state must be a JSON object." in result.output


@pytest.mark.usefixtures("cli_env")
def test_run_drives_auto_session_with_echo_agent(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    workdir = tmp_path / "work"
    workdir.mkdir()
    runner = CliRunner()
    session_id = _create(
        runner,
        db_path,
        "--type",
        "basic",
        "--mode",
        "auto",
        "--state",
        json.dumps({"document_path": "spec.md", "required_sections": ["Purpose", "Interfaces"]}),
    )

    result = _invoke(runner, db_path, "run", session_id, "--working-dir", str(workdir), "--timeout", "60")

    assert result.exit_code == 0, result.output
    assert "Steps executed: 4" in result.output
    assert f"{session_id} validate_spec -> ok" in result.output
    assert f"Session {session_id} status=complete" in result.output
    document = (workdir / "spec.md").read_text("utf-8")
    assert "## Purpose" in document
    assert "## Interfaces" in document

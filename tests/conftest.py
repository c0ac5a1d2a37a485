"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_sessions.config import AgentSettings
from agent_sessions.sessions.broadcaster import SessionBroadcaster
from agent_sessions.sessions.models import Scope
from agent_sessions.sessions.orchestrator import SessionOrchestrator
from agent_sessions.sessions.repository import SessionRepository
from agent_sessions.sessions.retry import RetryPolicy
from agent_sessions.sessions.services import SessionService

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_sessions.sessions.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def echo_agent_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def scope() -> Scope:
    return Scope(account_id="acct-1", project_id="proj-1", user_id="user-1")


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "sessions.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[SessionRepository]:
    repo = SessionRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def orchestrator(repository: SessionRepository) -> SessionOrchestrator:
    return SessionOrchestrator(
        repository,
        agent=AgentSettings(command_template=ECHO_AGENT_COMMAND_TEMPLATE, model="test-model"),
        retry_policy=RetryPolicy(poll_interval_seconds=0.05),
    )


@pytest.fixture()
def broadcaster() -> SessionBroadcaster:
    return SessionBroadcaster()


@pytest.fixture()
def service(
    repository: SessionRepository,
    orchestrator: SessionOrchestrator,
    broadcaster: SessionBroadcaster,
) -> SessionService:
    return SessionService(repository=repository, orchestrator=orchestrator, broadcaster=broadcaster)

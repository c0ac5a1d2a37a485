"""Runtime configuration for the session engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_sessions.storage.sqlmodel_models import (
    DEFAULT_ACCOUNT_ID,
    DEFAULT_PROJECT_ID,
    DEFAULT_USER_ID,
)

DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p --model {model} --permission-mode acceptEdits -- {prompt}"


@dataclass(slots=True)
class ScopeSettings:
    """Tenancy used by CLI commands."""

    account_id: str = DEFAULT_ACCOUNT_ID
    project_id: str = DEFAULT_PROJECT_ID
    user_id: str = DEFAULT_USER_ID


@dataclass(slots=True)
class AgentSettings:
    """How generation steps invoke the external agent."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    model: str = "sonnet"
    check_command: str = "pytest -q"


@dataclass(slots=True)
class ExecutionSettings:
    """Execution guard and retry policy settings."""

    command_timeout_seconds: int = 1_800
    async_result_timeout_seconds: int = 3_600
    max_validation_attempts: int = 10
    retry_base_seconds: float = 0.0
    retry_max_seconds: float = 300.0
    graceful_shutdown_seconds: int = 30
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_sessions.db")
    sqlite_busy_timeout_ms: int = 5_000
    scope: ScopeSettings = field(default_factory=ScopeSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_SESSIONS_DB_PATH", ".agent_sessions.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_SESSIONS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            scope=ScopeSettings(
                account_id=os.getenv("AGENT_SESSIONS_ACCOUNT_ID", DEFAULT_ACCOUNT_ID),
                project_id=os.getenv("AGENT_SESSIONS_PROJECT_ID", DEFAULT_PROJECT_ID),
                user_id=os.getenv("AGENT_SESSIONS_USER_ID", DEFAULT_USER_ID),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "AGENT_SESSIONS_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("AGENT_SESSIONS_AGENT_MODEL", "sonnet"),
                check_command=os.getenv("AGENT_SESSIONS_CHECK_COMMAND", "pytest -q"),
            ),
            execution=ExecutionSettings(
                command_timeout_seconds=int(
                    os.getenv("AGENT_SESSIONS_COMMAND_TIMEOUT_SECONDS", "1800"),
                ),
                async_result_timeout_seconds=int(
                    os.getenv("AGENT_SESSIONS_ASYNC_RESULT_TIMEOUT_SECONDS", "3600"),
                ),
                max_validation_attempts=int(
                    os.getenv("AGENT_SESSIONS_MAX_VALIDATION_ATTEMPTS", "10"),
                ),
                retry_base_seconds=float(os.getenv("AGENT_SESSIONS_RETRY_BASE_SECONDS", "0")),
                retry_max_seconds=float(os.getenv("AGENT_SESSIONS_RETRY_MAX_SECONDS", "300")),
                graceful_shutdown_seconds=int(
                    os.getenv("AGENT_SESSIONS_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                poll_interval_seconds=float(
                    os.getenv("AGENT_SESSIONS_POLL_INTERVAL_SECONDS", "2"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the engine cannot run with."""

        if self.execution.command_timeout_seconds <= 0:
            raise ValueError("AGENT_SESSIONS_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.execution.async_result_timeout_seconds <= 0:
            raise ValueError("AGENT_SESSIONS_ASYNC_RESULT_TIMEOUT_SECONDS must be > 0.")
        if self.execution.max_validation_attempts < 0:
            raise ValueError("AGENT_SESSIONS_MAX_VALIDATION_ATTEMPTS must be >= 0.")
        if self.execution.retry_base_seconds < 0:
            raise ValueError("AGENT_SESSIONS_RETRY_BASE_SECONDS must be >= 0.")
        if self.execution.retry_max_seconds < self.execution.retry_base_seconds:
            raise ValueError(
                "AGENT_SESSIONS_RETRY_MAX_SECONDS must be >= AGENT_SESSIONS_RETRY_BASE_SECONDS.",
            )
        if self.execution.poll_interval_seconds < 0:
            raise ValueError("AGENT_SESSIONS_POLL_INTERVAL_SECONDS must be >= 0.")
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                "AGENT_SESSIONS_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )

"""Subprocess-based execution of session commands."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from agent_sessions.sessions.models import Command, Result, ResultStatus
from agent_sessions.sessions.steps.base import NOOP_INVOCATION, READ_FILE_INVOCATION

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class ExecutorError(RuntimeError):
    """Command could not be started; ``transient`` hints whether a retry may help."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandExecutor:
    """Run a command to completion and turn its exit status into a raw result.

    Agent commands render the configured CLI template; shell commands run
    through ``/bin/sh -c``; builtins are handled in-process.
    """

    def __init__(
        self,
        *,
        timeout_seconds: int = 1_800,
        working_dir: Path | None = None,
        graceful_shutdown_seconds: int = 30,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.working_dir = working_dir
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.shutdown_requested = shutdown_requested

    def execute(self, command: Command) -> Result:
        runner = command.metadata.get("runner", "shell")
        if runner == "builtin":
            return self._run_builtin(command)
        with tempfile.TemporaryDirectory(prefix="agent-sessions-") as tmp:
            tmp_dir = Path(tmp)
            if runner == "agent":
                run_args = _build_agent_args(command, tmp_dir)
            else:
                if not command.invocation.strip():
                    raise ExecutorError("Shell command is empty.", transient=False)
                run_args = ["/bin/sh", "-c", command.invocation]
            return self._run_process(command, run_args, tmp_dir)

    def _run_builtin(self, command: Command) -> Result:
        if command.invocation == NOOP_INVOCATION:
            return Result(status=ResultStatus.OK, exit_code=0, duration_ms=0)
        if command.invocation == READ_FILE_INVOCATION:
            raw_path = command.metadata.get("path")
            if not raw_path:
                return Result(status=ResultStatus.ERROR, error_message="read_file requires a path")
            path = Path(str(raw_path))
            if not path.is_absolute() and self.working_dir is not None:
                path = self.working_dir / path
            try:
                content = path.read_text("utf-8")
            except FileNotFoundError:
                return Result(
                    status=ResultStatus.ERROR,
                    data={"path": str(path)},
                    error_message=f"File not found: {path}",
                )
            except (OSError, UnicodeDecodeError) as error:
                return Result(
                    status=ResultStatus.ERROR,
                    data={"path": str(path)},
                    error_message=f"Failed to read {path}: {error}",
                )
            return Result(status=ResultStatus.OK, data={"path": str(path), "content": content})
        raise ExecutorError(f"Unsupported builtin invocation: {command.invocation}", transient=False)

    def _run_process(self, command: Command, run_args: list[str], tmp_dir: Path) -> Result:
        stdout_path = tmp_dir / "stdout.txt"
        stderr_path = tmp_dir / "stderr.txt"
        env = os.environ.copy()
        env["AGENT_SESSIONS_STEP"] = command.step.value
        if command.metadata.get("model"):
            env["AGENT_SESSIONS_AGENT_MODEL"] = str(command.metadata["model"])

        started = time.monotonic()
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=self.working_dir,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=self.shutdown_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise ExecutorError(f"Command not found: {run_args[0]}", transient=False) from error
        except OSError as error:
            raise ExecutorError(f"Command failed to start: {error}", transient=True) from error
        duration_ms = int((time.monotonic() - started) * 1000)

        stdout = stdout_path.read_text("utf-8", errors="replace")
        stderr = stderr_path.read_text("utf-8", errors="replace")
        if timed_out:
            logger.warning(
                "Command for step %s timed out after %ss",
                command.step.value,
                self.timeout_seconds,
            )
            return Result(
                status=ResultStatus.ERROR,
                data={"timed_out": True},
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                error_message=f"Command timed out after {self.timeout_seconds}s",
                duration_ms=duration_ms,
            )
        return Result(
            status=ResultStatus.OK if exit_code == 0 else ResultStatus.ERROR,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            error_message=None if exit_code == 0 else f"Command exited with {exit_code}",
            duration_ms=duration_ms,
        )


def _build_agent_args(command: Command, tmp_dir: Path) -> list[str]:
    template = command.invocation.strip()
    if not template:
        raise ExecutorError("Agent command template is empty.", transient=False)
    prompt = command.payload or ""
    prompt_file = tmp_dir / "prompt.txt"
    prompt_file.write_text(prompt, "utf-8")
    try:
        rendered = template.format(
            model=shlex.quote(str(command.metadata.get("model", ""))),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise ExecutorError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Agent command template rendered empty command.", transient=False)
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True

        time.sleep(0.05)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

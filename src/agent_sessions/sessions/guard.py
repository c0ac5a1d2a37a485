"""Per-session execution guard.

At most one command runs per session at a time. ``run`` computes the next
command synchronously (so the caller learns the interaction id right away)
and executes it on a worker thread. Results for ``async`` commands arrive
through ``deliver_result``; everything else goes through the executor.

The in-flight marker lives only in memory. After a restart, sessions resume
from their persisted state and any open interaction is re-issued by the
next ``run``.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.executor import CommandExecutor, ExecutorError
from agent_sessions.sessions.models import (
    ExecutionMode,
    ExecutionStrategy,
    Interaction,
    Result,
    ResultStatus,
    Scope,
    SessionView,
    StepKind,
)
from agent_sessions.sessions.retry import RetryPolicy
from agent_sessions.sessions.services import SessionService
from agent_sessions.sessions.steps.base import SPAWN_INVOCATION

logger = logging.getLogger(__name__)


class GuardShutdownError(RuntimeError):
    """Raised by ``run`` after ``shutdown``."""


@dataclass(slots=True)
class RunHandle:
    """Returned by ``run``; ``future`` resolves to the session after the result is recorded."""

    session_id: str
    interaction_id: str
    step: StepKind
    future: Future[SessionView]


@dataclass(slots=True)
class _InFlight:
    interaction_id: str | None = None
    accepts_delivery: bool = False
    delivery: Future[Result] = field(default_factory=Future)
    delivery_values: dict[str, Any] | None = None
    done: Future[SessionView] = field(default_factory=Future)


class ExecutionGuard:
    """Single-flight coordinator keyed by session id."""

    def __init__(
        self,
        service: SessionService,
        executor: CommandExecutor,
        *,
        retry_policy: RetryPolicy | None = None,
        async_result_timeout_seconds: float = 3_600,
    ) -> None:
        self.service = service
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()
        self.async_result_timeout_seconds = async_result_timeout_seconds
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._inflight: dict[str, _InFlight] = {}
        self._timers: set[threading.Timer] = set()
        self._closed = False

    def run(self, scope: Scope, session_id: str, values: dict[str, Any] | None = None) -> RunHandle:
        """Start the session's next command; fails fast while another one is outstanding."""

        entry = _InFlight()
        with self._lock:
            if self._closed:
                raise GuardShutdownError("Execution guard is shut down.")
            if session_id in self._inflight:
                raise SessionError(
                    f"Session {session_id} already has an execution in progress.",
                    code=ErrorCode.EXECUTION_IN_PROGRESS,
                )
            self._inflight[session_id] = entry

        try:
            _, interaction = self.service.next_command(scope, session_id, values)
        except BaseException:
            self._release(session_id, entry)
            raise

        command = interaction.command
        with self._lock:
            entry.interaction_id = interaction.interaction_id
            entry.accepts_delivery = (
                command.invocation != SPAWN_INVOCATION
                and command.execution_strategy is ExecutionStrategy.ASYNC
            )

        worker = threading.Thread(
            target=self._execute,
            args=(scope, session_id, interaction, entry, values),
            name=f"session-{session_id[:8]}",
            daemon=True,
        )
        worker.start()
        logger.info(
            "Session %s: started %s (interaction %s)",
            session_id,
            command.step.value,
            interaction.interaction_id,
        )
        return RunHandle(
            session_id=session_id,
            interaction_id=interaction.interaction_id,
            step=command.step,
            future=entry.done,
        )

    def deliver_result(
        self,
        interaction_id: str,
        result: Result,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Hand an externally produced result to the execution waiting for it.

        Returns ``False`` (and logs) when nothing is waiting: unknown, late or
        duplicate deliveries are no-ops.
        """

        with self._lock:
            entry = next(
                (
                    item
                    for item in self._inflight.values()
                    if item.interaction_id == interaction_id and item.accepts_delivery
                ),
                None,
            )
            if entry is None:
                logger.warning("No execution waiting for a result of interaction %s", interaction_id)
                return False
            if entry.delivery.done():
                logger.warning("Duplicate result delivered for interaction %s", interaction_id)
                return False
            entry.delivery_values = values
            entry.delivery.set_result(result)
        return True

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._inflight

    def wait(self, session_id: str, timeout: float | None = None) -> bool:
        """Block until ``session_id`` has nothing in flight."""

        with self._changed:
            return self._changed.wait_for(lambda: session_id not in self._inflight, timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no session is running and no continuation is scheduled."""

        with self._changed:
            return self._changed.wait_for(
                lambda: not self._inflight and not self._timers,
                timeout,
            )

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop scheduling continuations and unblock executions waiting for a delivery."""

        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
            for entry in self._inflight.values():
                if entry.accepts_delivery and not entry.delivery.done():
                    entry.delivery.set_result(
                        Result(status=ResultStatus.ERROR, error_message="Execution guard shut down"),
                    )
            self._changed.notify_all()
        for timer in timers:
            timer.cancel()
        self.wait_idle(timeout)

    # -- worker -------------------------------------------------------------------

    def _execute(
        self,
        scope: Scope,
        session_id: str,
        interaction: Interaction,
        entry: _InFlight,
        values: dict[str, Any] | None,
    ) -> None:
        session: SessionView | None = None
        failure: BaseException | None = None
        continuation: threading.Timer | None = None
        try:
            raw = self._obtain_result(scope, interaction, entry)
            session = self.service.handle_result(
                scope,
                session_id,
                interaction.interaction_id,
                raw,
                entry.delivery_values if entry.delivery_values is not None else values,
            )
            continuation = self._prepare_continuation(scope, session, values)
        except SessionError as error:
            logger.warning(
                "Session %s: recording result of %s failed: %s",
                session_id,
                interaction.interaction_id,
                error,
            )
            failure = error
        except Exception as error:
            logger.exception(
                "Session %s: execution of interaction %s crashed",
                session_id,
                interaction.interaction_id,
            )
            failure = error
        finally:
            self._release(session_id, entry)

        if continuation is not None:
            continuation.start()
        if failure is not None:
            entry.done.set_exception(failure)
        else:
            entry.done.set_result(session)

    def _obtain_result(self, scope: Scope, interaction: Interaction, entry: _InFlight) -> Result:
        command = interaction.command
        if command.invocation == SPAWN_INVOCATION:
            launched = self._launch_children(scope, command.child_session_ids)
            return Result(
                status=ResultStatus.OK,
                data={"child_session_ids": command.child_session_ids, "launched": launched},
            )
        if entry.accepts_delivery:
            try:
                return entry.delivery.result(timeout=self.async_result_timeout_seconds)
            except FutureTimeoutError:
                logger.warning(
                    "No result delivered for interaction %s within %ss",
                    interaction.interaction_id,
                    self.async_result_timeout_seconds,
                )
                return Result(
                    status=ResultStatus.ERROR,
                    error_message=(
                        f"No result delivered within {self.async_result_timeout_seconds}s"
                    ),
                )
        try:
            return self.executor.execute(command)
        except ExecutorError as error:
            logger.warning("Command for interaction %s did not start: %s", interaction.interaction_id, error)
            return Result(
                status=ResultStatus.ERROR,
                data={"transient": error.transient},
                error_message=str(error),
            )

    def _launch_children(self, scope: Scope, child_session_ids: list[str]) -> list[str]:
        launched: list[str] = []
        for child_id in child_session_ids:
            try:
                self.run(scope, child_id)
            except GuardShutdownError:
                break
            except SessionError as error:
                if error.retryable or error.terminal:
                    logger.debug("Child session %s not launched: %s", child_id, error.code.value)
                    continue
                logger.warning("Failed to launch child session %s: %s", child_id, error)
                continue
            launched.append(child_id)
        return launched

    # -- continuation ---------------------------------------------------------------

    def _prepare_continuation(
        self,
        scope: Scope,
        session: SessionView,
        values: dict[str, Any] | None,
    ) -> threading.Timer | None:
        if session.execution_mode is not ExecutionMode.AUTO or session.status.terminal:
            return None
        if session.open_interaction is not None:
            return None
        delay = self.retry_policy.backoff_seconds(session)
        timer = threading.Timer(delay, self._continue, args=(scope, session.session_id, values))
        timer.daemon = True
        with self._lock:
            if self._closed:
                return None
            self._timers.add(timer)
        logger.debug("Session %s: next step in %.1fs", session.session_id, delay)
        return timer

    def _continue(self, scope: Scope, session_id: str, values: dict[str, Any] | None) -> None:
        try:
            self.run(scope, session_id, values)
        except SessionError as error:
            if error.retryable or error.terminal:
                logger.debug("Session %s: continuation skipped (%s)", session_id, error.code.value)
            else:
                logger.warning("Session %s: continuation failed: %s", session_id, error)
        except GuardShutdownError:
            logger.debug("Session %s: continuation skipped after shutdown", session_id)
        except Exception:
            logger.exception("Session %s: continuation crashed", session_id)
        finally:
            with self._lock:
                self._timers.discard(threading.current_thread())  # type: ignore[arg-type]
                self._changed.notify_all()

    def _release(self, session_id: str, entry: _InFlight) -> None:
        with self._lock:
            if self._inflight.get(session_id) is entry:
                del self._inflight[session_id]
            self._changed.notify_all()

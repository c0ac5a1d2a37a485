"""Persistent session repository scoped by tenancy."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from agent_sessions.sessions.errors import ErrorCode, SessionError
from agent_sessions.sessions.models import (
    Command,
    EventType,
    ExecutionMode,
    Interaction,
    Result,
    ResultStatus,
    Scope,
    SessionCreate,
    SessionEventView,
    SessionEventWrite,
    SessionStatus,
    SessionView,
    StepKind,
    StepOutcome,
)
from agent_sessions.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_sessions.storage.sqlmodel_models import (
    InteractionRecord,
    SessionEventRecord,
    SessionRecord,
)


@dataclass(slots=True)
class RecordedEvents:
    """Outcome of persisting one event batch."""

    events: list[SessionEventView] = field(default_factory=list)
    conversation_id_set: bool = False
    status_changed: bool = False


class SessionRepository:
    """Session persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables that do not exist yet."""

        SQLModel.metadata.create_all(self.engine)

    # -- sessions ---------------------------------------------------------------

    def create_session(self, scope: Scope, payload: SessionCreate) -> SessionView:
        """Create an active session owned by the scope's user."""

        now = utc_now()
        session_id = payload.session_id or str(uuid4())
        with Session(self.engine) as session:
            if payload.parent_session_id is not None:
                self._get_session_row(
                    session=session,
                    scope=scope,
                    session_id=payload.parent_session_id,
                )
            row = SessionRecord(
                session_id=session_id,
                account_id=scope.account_id,
                project_id=scope.project_id,
                user_id=scope.user_id,
                component_id=payload.component_id,
                session_type=payload.session_type,
                status=SessionStatus.ACTIVE.value,
                execution_mode=payload.execution_mode.value,
                state_json=dump_json(payload.state),
                parent_session_id=payload.parent_session_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row, [])

    def get_session(self, scope: Scope, session_id: str) -> SessionView | None:
        """Return a fresh session snapshot with interactions in execution order."""

        with Session(self.engine) as session:
            row = session.exec(
                select(SessionRecord).where(
                    SessionRecord.session_id == session_id,
                    SessionRecord.account_id == scope.account_id,
                    SessionRecord.project_id == scope.project_id,
                ),
            ).one_or_none()
            if row is None:
                return None
            interactions = self._load_interactions(session=session, session_ids=[row.session_id])
            return _to_session_view(row, interactions.get(row.session_id, []))

    def require_session(self, scope: Scope, session_id: str) -> SessionView:
        view = self.get_session(scope, session_id)
        if view is None:
            raise SessionError(f"Session not found: {session_id}", code=ErrorCode.SESSION_NOT_FOUND)
        return view

    def list_sessions(
        self,
        scope: Scope,
        *,
        statuses: tuple[SessionStatus, ...] = (),
        limit: int = 50,
    ) -> list[SessionView]:
        """List the scope user's most recent sessions, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(SessionRecord)
                .where(
                    SessionRecord.account_id == scope.account_id,
                    SessionRecord.project_id == scope.project_id,
                    SessionRecord.user_id == scope.user_id,
                )
                .order_by(col(SessionRecord.created_at).desc())
                .limit(limit)
            )
            if statuses:
                statement = statement.where(
                    col(SessionRecord.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
            interactions = self._load_interactions(
                session=session,
                session_ids=[row.session_id for row in rows],
            )
            return [_to_session_view(row, interactions.get(row.session_id, [])) for row in rows]

    def list_child_sessions(self, scope: Scope, parent_session_id: str) -> list[SessionView]:
        """Children of a session, read straight from storage."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SessionRecord)
                .where(
                    SessionRecord.parent_session_id == parent_session_id,
                    SessionRecord.account_id == scope.account_id,
                    SessionRecord.project_id == scope.project_id,
                )
                .order_by(col(SessionRecord.created_at).asc()),
            ).all()
            interactions = self._load_interactions(
                session=session,
                session_ids=[row.session_id for row in rows],
            )
            return [_to_session_view(row, interactions.get(row.session_id, [])) for row in rows]

    def update_status(self, scope: Scope, session_id: str, status: SessionStatus) -> bool:
        """Move an active session to ``status``; terminal sessions are left untouched."""

        with Session(self.engine) as session:
            self._get_session_row(session=session, scope=scope, session_id=session_id)
            changed = self._apply_status(session=session, session_id=session_id, status=status)
            session.commit()
            return changed

    def update_execution_mode(
        self,
        scope: Scope,
        session_id: str,
        mode: ExecutionMode,
    ) -> SessionView:
        with Session(self.engine) as session:
            row = self._get_session_row(session=session, scope=scope, session_id=session_id)
            row.execution_mode = mode.value
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
        return self.require_session(scope, session_id)

    # -- interactions -----------------------------------------------------------

    def get_interaction(self, scope: Scope, interaction_id: str) -> Interaction | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(InteractionRecord)
                .join(
                    SessionRecord,
                    col(SessionRecord.session_id) == col(InteractionRecord.session_id),
                )
                .where(
                    InteractionRecord.interaction_id == interaction_id,
                    SessionRecord.account_id == scope.account_id,
                    SessionRecord.project_id == scope.project_id,
                ),
            ).one_or_none()
            if row is None:
                return None
            return _to_interaction(row)

    def create_interaction(self, scope: Scope, session_id: str, command: Command) -> Interaction:
        """Append an open interaction; fails if the session already has one."""

        now = utc_now()
        with Session(self.engine) as session:
            self._get_session_row(session=session, scope=scope, session_id=session_id)
            last_sequence = session.exec(
                select(func.max(InteractionRecord.sequence)).where(
                    InteractionRecord.session_id == session_id,
                ),
            ).one()
            row = InteractionRecord(
                interaction_id=str(uuid4()),
                session_id=session_id,
                sequence=(last_sequence or 0) + 1,
                step=command.step.value,
                invocation=command.invocation,
                command_metadata_json=dump_json(command.metadata),
                payload=command.payload,
                command_created_at=command.created_at,
                created_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise SessionError(
                    f"Session {session_id} already has an open interaction.",
                    code=ErrorCode.INVALID_STATE,
                ) from error
            session.refresh(row)
            return _to_interaction(row)

    def replace_open_interaction(
        self,
        scope: Scope,
        session_id: str,
        command: Command,
    ) -> Interaction | None:
        """Swap the command of the open interaction, if any."""

        with Session(self.engine) as session:
            self._get_session_row(session=session, scope=scope, session_id=session_id)
            row = session.exec(
                select(InteractionRecord).where(
                    InteractionRecord.session_id == session_id,
                    col(InteractionRecord.result_status).is_(None),
                ),
            ).one_or_none()
            if row is None:
                return None
            row.step = command.step.value
            row.invocation = command.invocation
            row.command_metadata_json = dump_json(command.metadata)
            row.payload = command.payload
            row.command_created_at = command.created_at
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_interaction(row)

    def complete_interaction(
        self,
        scope: Scope,
        *,
        session_id: str,
        interaction_id: str,
        outcome: StepOutcome,
    ) -> SessionView:
        """Attach a result, merge the state patch and apply a status change atomically."""

        result = outcome.result
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_session_row(session=session, scope=scope, session_id=session_id)
            updated = session.exec(
                sa_update(InteractionRecord)
                .where(
                    col(InteractionRecord.interaction_id) == interaction_id,
                    col(InteractionRecord.session_id) == session_id,
                    col(InteractionRecord.result_status).is_(None),
                )
                .values(
                    result_status=result.status.value,
                    result_data_json=dump_json(result.data),
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    error_message=result.error_message,
                    duration_ms=result.duration_ms,
                    completed_at=to_db_datetime(result.completed_at),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                raise SessionError(
                    f"Interaction {interaction_id} is not the open interaction of "
                    f"session {session_id}.",
                    code=ErrorCode.INTERACTION_ALREADY_COMPLETE,
                )
            if outcome.state_patch:
                merged = load_json(row.state_json)
                merged.update(outcome.state_patch)
                row.state_json = dump_json(merged)
            row.updated_at = now
            session.add(row)
            session.flush()
            if outcome.status is not None:
                self._apply_status(session=session, session_id=session_id, status=outcome.status)
            session.commit()
        return self.require_session(scope, session_id)

    # -- audit log --------------------------------------------------------------

    def record_events(  # noqa: PLR0913
        self,
        scope: Scope,
        *,
        session_id: str,
        interaction_id: str | None,
        events: list[SessionEventWrite],
        conversation_id: str | None = None,
        status: SessionStatus | None = None,
    ) -> RecordedEvents:
        """Persist a batch of events and their side effects in one transaction."""

        now = utc_now()
        recorded = RecordedEvents()
        with Session(self.engine) as session:
            self._get_session_row(session=session, scope=scope, session_id=session_id)
            rows = [
                SessionEventRecord(
                    session_id=session_id,
                    interaction_id=interaction_id,
                    account_id=scope.account_id,
                    event_type=item.event_type.value,
                    data_json=dump_json(item.data),
                    sent_at=to_db_datetime(item.sent_at),
                    created_at=now,
                )
                for item in events
            ]
            session.add_all(rows)
            if conversation_id is not None:
                result = session.exec(
                    sa_update(SessionRecord)
                    .where(
                        col(SessionRecord.session_id) == session_id,
                        col(SessionRecord.external_conversation_id).is_(None),
                    )
                    .values(
                        external_conversation_id=conversation_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                recorded.conversation_id_set = result.rowcount == 1
            if status is not None:
                recorded.status_changed = self._apply_status(
                    session=session,
                    session_id=session_id,
                    status=status,
                )
            session.commit()
            for row in rows:
                session.refresh(row)
            recorded.events = [_to_event_view(row) for row in rows]
        return recorded

    def list_events(self, scope: Scope, session_id: str, *, limit: int = 200) -> list[SessionEventView]:
        with Session(self.engine) as session:
            self._get_session_row(session=session, scope=scope, session_id=session_id)
            rows = session.exec(
                select(SessionEventRecord)
                .where(
                    SessionEventRecord.session_id == session_id,
                    SessionEventRecord.account_id == scope.account_id,
                )
                .order_by(col(SessionEventRecord.id).asc())
                .limit(limit),
            ).all()
        return [_to_event_view(row) for row in rows]

    # -- helpers ----------------------------------------------------------------

    def _get_session_row(self, *, session: Session, scope: Scope, session_id: str) -> SessionRecord:
        row = session.exec(
            select(SessionRecord).where(
                SessionRecord.session_id == session_id,
                SessionRecord.account_id == scope.account_id,
                SessionRecord.project_id == scope.project_id,
            ),
        ).one_or_none()
        if row is None:
            raise SessionError(f"Session not found: {session_id}", code=ErrorCode.SESSION_NOT_FOUND)
        return row

    def _apply_status(self, *, session: Session, session_id: str, status: SessionStatus) -> bool:
        if status is SessionStatus.ACTIVE:
            return False
        result = session.exec(
            sa_update(SessionRecord)
            .where(
                col(SessionRecord.session_id) == session_id,
                col(SessionRecord.status) == SessionStatus.ACTIVE.value,
            )
            .values(status=status.value, updated_at=to_db_datetime(utc_now())),
        )
        return result.rowcount == 1

    def _load_interactions(
        self,
        *,
        session: Session,
        session_ids: list[str],
    ) -> dict[str, list[Interaction]]:
        if not session_ids:
            return {}
        rows = session.exec(
            select(InteractionRecord)
            .where(col(InteractionRecord.session_id).in_(session_ids))
            .order_by(col(InteractionRecord.sequence).asc()),
        ).all()
        grouped: dict[str, list[Interaction]] = {}
        for row in rows:
            grouped.setdefault(row.session_id, []).append(_to_interaction(row))
        return grouped


def _to_interaction(row: InteractionRecord) -> Interaction:
    result = None
    if row.result_status is not None:
        result = Result(
            status=ResultStatus(row.result_status),
            data=load_json(row.result_data_json),
            exit_code=row.exit_code,
            stdout=row.stdout,
            stderr=row.stderr,
            error_message=row.error_message,
            duration_ms=row.duration_ms,
            completed_at=to_utc_aware_datetime(row.completed_at or row.created_at),
        )
    return Interaction(
        interaction_id=row.interaction_id,
        session_id=row.session_id,
        sequence=row.sequence,
        command=Command(
            step=StepKind(row.step),
            invocation=row.invocation,
            metadata=load_json(row.command_metadata_json),
            payload=row.payload,
            created_at=to_utc_aware_datetime(row.command_created_at),
        ),
        result=result,
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )


def _to_session_view(row: SessionRecord, interactions: list[Interaction]) -> SessionView:
    return SessionView(
        session_id=row.session_id,
        session_type=row.session_type,
        status=SessionStatus(row.status),
        execution_mode=ExecutionMode(row.execution_mode),
        state=load_json(row.state_json),
        account_id=row.account_id,
        project_id=row.project_id,
        user_id=row.user_id,
        component_id=row.component_id,
        parent_session_id=row.parent_session_id,
        external_conversation_id=row.external_conversation_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        interactions=interactions,
    )


def _to_event_view(row: SessionEventRecord) -> SessionEventView:
    return SessionEventView(
        event_id=row.id or 0,
        session_id=row.session_id,
        interaction_id=row.interaction_id,
        event_type=EventType(row.event_type),
        sent_at=to_utc_aware_datetime(row.sent_at),
        created_at=to_utc_aware_datetime(row.created_at),
        data=load_json(row.data_json),
    )

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Sequence
from uuid import uuid4

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from phoneops.core.config import Settings
from phoneops.core.locking import KeyedLock
from phoneops.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    OperationSession,
    SessionKind,
    SessionStatus,
)
from phoneops.sessions.lock_service import DeviceLockedError, DeviceLockRegistry
from phoneops.sessions.types import SessionListResult, SessionSnapshot, SessionStats

logger = logging.getLogger(__name__)

SessionMutator = Callable[[OperationSession, datetime], None]


class SessionNotFoundError(RuntimeError):
    pass


class SessionStore:
    """Durable session records plus the device lock that guards each active one.

    ``update`` is a serialized read-modify-write per session id; when a mutator
    moves a record into a terminal status the device lock is released in the
    same transaction.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], locks: DeviceLockRegistry):
        self._settings = settings
        self._session_factory = session_factory
        self._locks = locks
        self._row_locks = KeyedLock()

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def create(
        self,
        *,
        owner_id: str,
        device_id: str,
        kind: SessionKind,
        options: dict[str, Any] | None = None,
        related_device_ids: Sequence[str] = (),
    ) -> SessionSnapshot:
        """Insert a pending session and lease its device plus any ``related_device_ids``."""
        session_id = str(uuid4())
        now = self._now()
        locked_devices = [device_id, *(item for item in dict.fromkeys(related_device_ids) if item != device_id)]
        with self._session_factory() as session:
            for locked_device_id in locked_devices:
                evicted_owner = self._locks.evict_expired(session, locked_device_id)
                if evicted_owner is not None:
                    self._fail_evicted_owner(session, evicted_owner, now)

            row = OperationSession(
                id=session_id,
                owner_id=owner_id,
                device_id=device_id,
                kind=kind,
                status=SessionStatus.PENDING,
                options=dict(options or {}),
                progress_percent=0,
                counters={},
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise DeviceLockedError(device_id, self._active_session_id(session, device_id)) from exc

            for locked_device_id in locked_devices:
                self._locks.acquire(session, locked_device_id, session_id)
            session.commit()
            session.refresh(row)
            logger.info("Session %s created (%s) for device %s", session_id, kind.value, device_id)
            return self._to_snapshot(row)

    def _fail_evicted_owner(self, session: Session, owner_session_id: str, now: datetime) -> None:
        owner = session.get(OperationSession, owner_session_id)
        if owner is None or owner.status in TERMINAL_STATUSES:
            return
        owner.status = SessionStatus.FAILED
        owner.pending_command = None
        owner.error_code = "LOCK_LOST"
        owner.error_info = "device lock lease expired"
        owner.ended_at = now
        owner.updated_at = now
        for held_device_id in self._locks.devices_held_by(session, owner_session_id):
            self._locks.release(session, held_device_id, owner_session_id)
        session.flush()
        logger.warning("Session %s failed after its device lock lease expired", owner_session_id)

    def _active_session_id(self, session: Session, device_id: str) -> str | None:
        owner = self._locks.owner_of(session, device_id)
        if owner is not None:
            return owner
        return session.scalar(
            select(OperationSession.id).where(
                OperationSession.device_id == device_id,
                OperationSession.status.in_(list(ACTIVE_STATUSES)),
            )
        )

    def get(self, session_id: str) -> SessionSnapshot:
        with self._session_factory() as session:
            row = session.get(OperationSession, session_id)
            if row is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            return self._to_snapshot(row)

    def update(self, session_id: str, mutator: SessionMutator) -> SessionSnapshot:
        with self._row_locks.hold(session_id), self._session_factory() as session:
            row = session.scalar(
                select(OperationSession).where(OperationSession.id == session_id).with_for_update()
            )
            if row is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")

            was_terminal = row.status in TERMINAL_STATUSES
            now = self._now()
            try:
                mutator(row, now)
            except Exception:
                session.rollback()
                raise

            if session.is_modified(row):
                row.updated_at = now
            if not was_terminal and row.status in TERMINAL_STATUSES:
                for held_device_id in self._locks.devices_held_by(session, row.id):
                    self._locks.release(session, held_device_id, row.id)
            session.commit()
            session.refresh(row)
            return self._to_snapshot(row)

    def list(
        self,
        owner_id: str,
        *,
        kind: SessionKind | None = None,
        status: SessionStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> SessionListResult:
        requested = self._settings.default_page_size if limit is None else limit
        bounded_limit = max(1, min(requested, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = (
                select(OperationSession)
                .where(OperationSession.owner_id == owner_id)
                .order_by(OperationSession.created_at.desc(), OperationSession.id.desc())
                .limit(bounded_limit + 1)
            )
            if kind is not None:
                stmt = stmt.where(OperationSession.kind == kind)
            if status is not None:
                stmt = stmt.where(OperationSession.status == status)
            if cursor:
                anchor_exists = session.scalar(
                    select(OperationSession.id).where(
                        OperationSession.id == cursor,
                        OperationSession.owner_id == owner_id,
                    )
                )
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = (
                    select(OperationSession.created_at).where(OperationSession.id == cursor).scalar_subquery()
                )
                stmt = stmt.where(
                    or_(
                        OperationSession.created_at < anchor_created_at,
                        and_(OperationSession.created_at == anchor_created_at, OperationSession.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return SessionListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def list_active(self) -> list[SessionSnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(OperationSession)
                .where(OperationSession.status.in_(list(ACTIVE_STATUSES)))
                .order_by(OperationSession.created_at.asc(), OperationSession.id.asc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def holds_device_lock(self, snapshot: SessionSnapshot) -> bool:
        with self._session_factory() as session:
            return self._locks.is_owned_and_alive(session, snapshot.device_id, snapshot.id)

    def locked_devices(self, session_id: str) -> list[str]:
        with self._session_factory() as session:
            return self._locks.devices_held_by(session, session_id)

    def expired_lock_owner(self, device_id: str) -> str | None:
        with self._session_factory() as session:
            return self._locks.expired_owner(session, device_id)

    def refresh_device_locks(self, sessions: list[SessionSnapshot]) -> int:
        refreshed = 0
        with self._session_factory() as session:
            for snapshot in sessions:
                for device_id in self._locks.devices_held_by(session, snapshot.id):
                    if self._locks.refresh(session, device_id, snapshot.id):
                        refreshed += 1
            session.commit()
        return refreshed

    def stats(self, owner_id: str, *, since: datetime | None = None) -> SessionStats:
        """Session counts for ``owner_id`` grouped by status and by kind, optionally since a point in time."""
        now = self._now()
        stmt = (
            select(OperationSession.kind, OperationSession.status, func.count())
            .where(OperationSession.owner_id == owner_id)
            .group_by(OperationSession.kind, OperationSession.status)
        )
        if since is not None:
            stmt = stmt.where(OperationSession.created_at >= since)
        with self._session_factory() as session:
            rows = session.execute(stmt).all()

        by_status = {item.value: 0 for item in SessionStatus}
        by_kind = {item.value: 0 for item in SessionKind}
        for kind, session_status, count in rows:
            by_kind[SessionKind(kind).value] += int(count)
            by_status[SessionStatus(session_status).value] += int(count)
        return SessionStats(
            generated_at=now,
            since=since,
            total=sum(by_status.values()),
            by_status=by_status,
            by_kind=by_kind,
        )

    def _to_snapshot(self, row: OperationSession) -> SessionSnapshot:
        return SessionSnapshot(
            id=row.id,
            owner_id=row.owner_id,
            device_id=row.device_id,
            kind=row.kind,
            status=row.status,
            options=dict(row.options or {}),
            progress_percent=row.progress_percent,
            counters=dict(row.counters or {}),
            phase_label=row.phase_label,
            pending_command=row.pending_command,
            command_requested_at=_coerce_utc(row.command_requested_at),
            last_heartbeat_at=_coerce_utc(row.last_heartbeat_at),
            result_summary=row.result_summary,
            error_code=row.error_code,
            error_info=row.error_info,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
            started_at=_coerce_utc(row.started_at),
            paused_at=_coerce_utc(row.paused_at),
            resumed_at=_coerce_utc(row.resumed_at),
            ended_at=_coerce_utc(row.ended_at),
        )


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def snapshot_to_dict(snapshot: SessionSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "owner_id": snapshot.owner_id,
        "device_id": snapshot.device_id,
        "kind": snapshot.kind.value,
        "status": snapshot.status.value,
        "options": snapshot.options,
        "progress_percent": snapshot.progress_percent,
        "counters": snapshot.counters,
        "phase_label": snapshot.phase_label,
        "pending_command": snapshot.pending_command.value if snapshot.pending_command else None,
        "command_requested_at": snapshot.command_requested_at,
        "last_heartbeat_at": snapshot.last_heartbeat_at,
        "result_summary": snapshot.result_summary,
        "error_code": snapshot.error_code,
        "error_info": snapshot.error_info,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "paused_at": snapshot.paused_at,
        "resumed_at": snapshot.resumed_at,
        "ended_at": snapshot.ended_at,
    }


def stats_to_dict(stats: SessionStats) -> dict[str, Any]:
    return {
        "generated_at": stats.generated_at,
        "since": stats.since,
        "total": stats.total,
        "by_status": dict(stats.by_status),
        "by_kind": dict(stats.by_kind),
    }

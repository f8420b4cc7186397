from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from phoneops.auth.gate import AuthorizationGate
from phoneops.core.config import Settings
from phoneops.core.locking import KeyedLock
from phoneops.db.models import (
    TERMINAL_STATUSES,
    OperationSession,
    SessionCommand,
    SessionKind,
    SessionStatus,
)
from phoneops.sessions.broadcaster import ProgressBroadcaster, Subscription
from phoneops.sessions.lock_service import SessionConflictError
from phoneops.sessions.store import SessionStore
from phoneops.sessions.types import ProgressEvent, SessionListResult, SessionSnapshot, SessionStats
from phoneops.workers.base import InvalidSessionOptionsError, WorkerHandle, WorkerOutcome
from phoneops.workers.registry import WorkerRegistry

logger = logging.getLogger(__name__)


class SessionForbiddenError(RuntimeError):
    pass


class InvalidSessionStateError(SessionConflictError):
    pass


class LockLostError(SessionConflictError):
    pass


ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.CANCELLED},
    SessionStatus.RUNNING: {
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    },
    SessionStatus.PAUSED: {
        SessionStatus.RUNNING,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.CANCELLED: set(),
}


def _enforce_transition(session_id: str, from_status: SessionStatus, to_status: SessionStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidSessionStateError(
            f"Illegal transition: {from_status.value} -> {to_status.value}",
            session_id=session_id,
        )


class SessionController:
    """State machine driving device operation sessions.

    Every mutation of a session, whether from a client command, a worker
    callback or the watchdog, happens while holding that session's mutex, and
    the resulting event is published before the mutex is released. Subscribers
    therefore observe status changes in the order they were stored.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        broadcaster: ProgressBroadcaster,
        gate: AuthorizationGate,
        registry: WorkerRegistry,
    ):
        self._settings = settings
        self._store = store
        self._broadcaster = broadcaster
        self._gate = gate
        self._registry = registry
        self._session_locks = KeyedLock()
        self._handles: dict[str, WorkerHandle] = {}
        self._handles_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    # Commands

    def create_session(
        self,
        user_id: str,
        device_id: str,
        kind: SessionKind,
        options: Mapping[str, Any] | None = None,
    ) -> SessionSnapshot:
        self._authorize(user_id, device_id)
        worker = self._registry.get(kind)
        parsed_options = worker.parse_options(options)
        related_device_ids = worker.related_devices(parsed_options)
        for related_device_id in related_device_ids:
            if related_device_id == device_id:
                raise InvalidSessionOptionsError("Target device must differ from the session device")
            self._authorize(user_id, related_device_id)

        self._reclaim_expired_leases([device_id, *related_device_ids])
        snapshot = self._store.create(
            owner_id=user_id,
            device_id=device_id,
            kind=kind,
            options=parsed_options,
            related_device_ids=related_device_ids,
        )
        with self._session_locks.hold(snapshot.id):
            try:
                handle = worker.start(snapshot, self)
            except Exception as exc:
                logger.exception("Worker for session %s failed to start", snapshot.id)
                return self._finalize(snapshot.id, WorkerOutcome.failed("WORKER_START_FAILED", str(exc)))
            # A worker may already have reported its terminal outcome from inside start().
            snapshot = self._store.get(snapshot.id)
            if not snapshot.is_terminal:
                self._attach(snapshot.id, handle)
        return snapshot

    def get_session(self, session_id: str, user_id: str | None = None) -> SessionSnapshot:
        snapshot = self._store.get(session_id)
        if user_id is not None and snapshot.owner_id != user_id:
            raise SessionForbiddenError(f"Session {session_id} belongs to another user")
        return snapshot

    def list_sessions(
        self,
        user_id: str,
        *,
        kind: SessionKind | None = None,
        status: SessionStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> SessionListResult:
        return self._store.list(user_id, kind=kind, status=status, limit=limit, cursor=cursor)

    def session_stats(self, user_id: str, *, days: int | None = None) -> SessionStats:
        since = self._now() - timedelta(days=days) if days is not None else None
        return self._store.stats(user_id, since=since)

    def supported_kinds(self) -> list[tuple[SessionKind, dict[str, Any]]]:
        """Registered session kinds with the JSON schema of the options each accepts."""
        return [(kind, self._registry.get(kind).options_schema()) for kind in self._registry.kinds()]

    def pause_session(self, session_id: str, user_id: str) -> SessionSnapshot:
        self._authorize(user_id, self._store.get(session_id).device_id)
        with self._session_locks.hold(session_id):
            snapshot = self._store.get(session_id)
            if snapshot.status == SessionStatus.PAUSED or snapshot.pending_command == SessionCommand.PAUSE:
                return snapshot
            if snapshot.status != SessionStatus.RUNNING:
                raise InvalidSessionStateError(
                    f"Cannot pause a {snapshot.status.value} session", session_id=session_id
                )
            if snapshot.pending_command == SessionCommand.CANCEL:
                raise InvalidSessionStateError("Cancellation already in progress", session_id=session_id)
            handle = self._require_handle(snapshot)

            snapshot = self._store.update(session_id, self._request_command(SessionCommand.PAUSE))
            handle.pause()
            self._publish(snapshot, "command")
            logger.info("Pause requested for session %s", session_id)
            return snapshot

    def resume_session(self, session_id: str, user_id: str) -> SessionSnapshot:
        self._authorize(user_id, self._store.get(session_id).device_id)
        with self._session_locks.hold(session_id):
            snapshot = self._store.get(session_id)
            if snapshot.status == SessionStatus.RUNNING:
                if snapshot.pending_command == SessionCommand.PAUSE:
                    raise InvalidSessionStateError(
                        "Pause not yet acknowledged by the worker", session_id=session_id
                    )
                return snapshot
            if snapshot.status != SessionStatus.PAUSED:
                raise InvalidSessionStateError(
                    f"Cannot resume a {snapshot.status.value} session", session_id=session_id
                )
            if snapshot.pending_command == SessionCommand.RESUME:
                return snapshot
            if snapshot.pending_command == SessionCommand.CANCEL:
                raise InvalidSessionStateError("Cancellation already in progress", session_id=session_id)
            if not self._store.holds_device_lock(snapshot):
                self._lose_lock(session_id)
                raise LockLostError(f"Session {session_id} no longer holds its device lock", session_id=session_id)
            handle = self._require_handle(snapshot)

            snapshot = self._store.update(session_id, self._request_command(SessionCommand.RESUME))
            handle.resume()
            self._publish(snapshot, "command")
            logger.info("Resume requested for session %s", session_id)
            return snapshot

    def cancel_session(self, session_id: str, user_id: str) -> SessionSnapshot:
        self._authorize(user_id, self._store.get(session_id).device_id)
        with self._session_locks.hold(session_id):
            snapshot = self._store.get(session_id)
            if snapshot.is_terminal:
                raise InvalidSessionStateError(
                    f"Session already {snapshot.status.value}", session_id=session_id
                )
            if snapshot.pending_command == SessionCommand.CANCEL:
                return snapshot

            handle = self._handle(session_id)
            if handle is None:
                return self._finalize(session_id, WorkerOutcome.cancelled())

            snapshot = self._store.update(session_id, self._request_command(SessionCommand.CANCEL))
            handle.cancel()
            self._publish(snapshot, "command")
            logger.info("Cancel requested for session %s", session_id)
            return snapshot

    def subscribe_progress(self, session_id: str, user_id: str | None = None) -> Subscription:
        with self._session_locks.hold(session_id):
            snapshot = self.get_session(session_id, user_id)
            initial = ProgressEvent.from_snapshot(snapshot, event="snapshot", timestamp=self._now())
            return self._broadcaster.subscribe(session_id, initial=initial)

    # Worker callbacks

    def on_progress(
        self,
        session_id: str,
        percent: int,
        counters: Mapping[str, Any],
        phase_label: str | None,
    ) -> None:
        percent = max(0, min(100, int(percent)))
        changes = {"started": False, "accepted": False}

        def mutate(row: OperationSession, now: datetime) -> None:
            if row.status in TERMINAL_STATUSES:
                return
            row.last_heartbeat_at = now
            if row.status == SessionStatus.PENDING:
                _enforce_transition(row.id, row.status, SessionStatus.RUNNING)
                row.status = SessionStatus.RUNNING
                row.started_at = now
                changes["started"] = True
            if percent < row.progress_percent:
                return
            row.progress_percent = percent
            row.counters = dict(counters)
            row.phase_label = phase_label
            changes["accepted"] = True

        with self._session_locks.hold(session_id):
            snapshot = self._store.update(session_id, mutate)
            if changes["started"]:
                logger.info("Session %s is running", session_id)
                self._publish(snapshot, "status")
            if changes["accepted"]:
                self._publish(snapshot, "progress")
            elif not snapshot.is_terminal:
                logger.debug("Ignored out-of-order progress %d%% for session %s", percent, session_id)

    def on_paused(self, session_id: str) -> None:
        changed = {"paused": False}

        def mutate(row: OperationSession, now: datetime) -> None:
            if row.status != SessionStatus.RUNNING or row.pending_command != SessionCommand.PAUSE:
                return
            _enforce_transition(row.id, row.status, SessionStatus.PAUSED)
            row.status = SessionStatus.PAUSED
            row.paused_at = now
            row.last_heartbeat_at = now
            row.pending_command = None
            row.command_requested_at = None
            changed["paused"] = True

        with self._session_locks.hold(session_id):
            snapshot = self._store.update(session_id, mutate)
            if changed["paused"]:
                logger.info("Session %s paused", session_id)
                self._publish(snapshot, "status")

    def on_resumed(self, session_id: str) -> None:
        changed = {"resumed": False}

        def mutate(row: OperationSession, now: datetime) -> None:
            if row.status != SessionStatus.PAUSED or row.pending_command != SessionCommand.RESUME:
                return
            _enforce_transition(row.id, row.status, SessionStatus.RUNNING)
            row.status = SessionStatus.RUNNING
            row.resumed_at = now
            row.last_heartbeat_at = now
            row.pending_command = None
            row.command_requested_at = None
            changed["resumed"] = True

        with self._session_locks.hold(session_id):
            snapshot = self._store.get(session_id)
            if snapshot.status != SessionStatus.PAUSED or snapshot.pending_command != SessionCommand.RESUME:
                return
            if not self._store.holds_device_lock(snapshot):
                self._lose_lock(session_id)
                return
            snapshot = self._store.update(session_id, mutate)
            if changed["resumed"]:
                logger.info("Session %s resumed", session_id)
                self._publish(snapshot, "status")

    def on_terminal(self, session_id: str, outcome: WorkerOutcome) -> None:
        with self._session_locks.hold(session_id):
            self._detach(session_id)
            self._finalize(session_id, outcome)

    # Watchdog

    def enforce_deadlines(self) -> int:
        """Force-finish sessions whose worker went silent, ignored a cancel, or stayed paused too long."""
        forced = 0
        still_active: list[SessionSnapshot] = []
        for candidate in self._store.list_active():
            with self._session_locks.hold(candidate.id):
                snapshot = self._store.get(candidate.id)
                if snapshot.is_terminal:
                    continue
                outcome = self._deadline_outcome(snapshot, self._now())
                if outcome is None:
                    still_active.append(snapshot)
                    continue
                handle = self._detach(snapshot.id)
                if handle is not None:
                    handle.cancel()
                logger.warning(
                    "Watchdog forcing session %s from %s to %s (%s)",
                    snapshot.id,
                    snapshot.status.value,
                    outcome.status.value,
                    outcome.error_code or "cancel grace elapsed",
                )
                self._finalize(snapshot.id, outcome)
                forced += 1

        attached = self._attached_ids()
        self._store.refresh_device_locks([snapshot for snapshot in still_active if snapshot.id in attached])
        return forced

    def _deadline_outcome(self, snapshot: SessionSnapshot, now: datetime) -> WorkerOutcome | None:
        if snapshot.pending_command == SessionCommand.CANCEL:
            requested_at = snapshot.command_requested_at or snapshot.updated_at
            if now - requested_at >= timedelta(seconds=self._settings.cancel_grace_seconds):
                return WorkerOutcome.cancelled()
            return None

        if snapshot.status in (SessionStatus.PENDING, SessionStatus.RUNNING):
            last_seen = snapshot.last_heartbeat_at or snapshot.started_at or snapshot.created_at
            if now - last_seen >= timedelta(seconds=self._settings.worker_timeout_seconds):
                return WorkerOutcome.failed("WORKER_TIMEOUT", "worker timeout")
            return None

        if snapshot.status == SessionStatus.PAUSED:
            paused_since = snapshot.paused_at or snapshot.updated_at
            if now - paused_since >= timedelta(seconds=self._settings.max_pause_seconds):
                return WorkerOutcome.failed("PAUSE_TIMEOUT", "session stayed paused too long")
        return None

    def recover_orphaned_sessions(self) -> int:
        """Fail sessions left active by a previous process; their workers are gone."""
        attached = self._attached_ids()
        recovered = 0
        for candidate in self._store.list_active():
            if candidate.id in attached:
                continue
            with self._session_locks.hold(candidate.id):
                snapshot = self._finalize(
                    candidate.id, WorkerOutcome.failed("WORKER_LOST", "worker lost when the service restarted")
                )
                if snapshot.error_code == "WORKER_LOST":
                    recovered += 1
        if recovered:
            logger.warning("Recovered %d orphaned sessions", recovered)
        return recovered

    def active_count(self) -> int:
        with self._handles_lock:
            return len(self._handles)

    def shutdown(self, timeout: float | None = None) -> None:
        with self._handles_lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        for handle in handles:
            handle.join(timeout)
        self._broadcaster.close_all()

    # Internals

    def _authorize(self, user_id: str, device_id: str) -> None:
        if not self._gate.owns_device(user_id, device_id):
            raise SessionForbiddenError(f"User {user_id} does not own device {device_id}")

    def _request_command(self, command: SessionCommand):  # type: ignore[no-untyped-def]
        def mutate(row: OperationSession, now: datetime) -> None:
            row.pending_command = command
            row.command_requested_at = now

        return mutate

    def _finalize(self, session_id: str, outcome: WorkerOutcome) -> SessionSnapshot:
        changed = {"final": False}

        def mutate(row: OperationSession, now: datetime) -> None:
            if row.status in TERMINAL_STATUSES:
                return
            if row.status == SessionStatus.PENDING and outcome.status == SessionStatus.COMPLETED:
                row.status = SessionStatus.RUNNING
                row.started_at = now
            _enforce_transition(row.id, row.status, outcome.status)
            row.status = outcome.status
            row.ended_at = now
            row.pending_command = None
            row.command_requested_at = None
            row.result_summary = dict(outcome.result_summary or {})
            if outcome.status == SessionStatus.COMPLETED:
                row.progress_percent = 100
                row.phase_label = "completed"
            if outcome.status == SessionStatus.FAILED:
                row.error_code = outcome.error_code
                row.error_info = outcome.error_info
            changed["final"] = True

        snapshot = self._store.update(session_id, mutate)
        if changed["final"]:
            logger.info(
                "Session %s finished as %s%s",
                session_id,
                snapshot.status.value,
                f" ({snapshot.error_code}: {snapshot.error_info})" if snapshot.error_code else "",
            )
            self._publish(snapshot, "status")
        else:
            logger.debug("Ignored duplicate terminal report for session %s", session_id)
        return snapshot

    def _reclaim_expired_leases(self, device_ids: list[str]) -> None:
        for device_id in device_ids:
            owner_id = self._store.expired_lock_owner(device_id)
            if owner_id is None:
                continue
            with self._session_locks.hold(owner_id):
                logger.warning("Lease of session %s on device %s expired; reclaiming the device", owner_id, device_id)
                self._lose_lock(owner_id, "device lock lease expired")

    def _lose_lock(self, session_id: str, reason: str = "device lock lost") -> None:
        handle = self._detach(session_id)
        if handle is not None:
            handle.cancel()
        self._finalize(session_id, WorkerOutcome.failed("LOCK_LOST", reason))

    def _publish(self, snapshot: SessionSnapshot, event: str) -> None:
        self._broadcaster.publish(
            snapshot.id, ProgressEvent.from_snapshot(snapshot, event=event, timestamp=self._now())
        )

    def _attach(self, session_id: str, handle: WorkerHandle) -> None:
        with self._handles_lock:
            self._handles[session_id] = handle

    def _detach(self, session_id: str) -> WorkerHandle | None:
        with self._handles_lock:
            return self._handles.pop(session_id, None)

    def _handle(self, session_id: str) -> WorkerHandle | None:
        with self._handles_lock:
            return self._handles.get(session_id)

    def _attached_ids(self) -> set[str]:
        with self._handles_lock:
            return set(self._handles)

    def _require_handle(self, snapshot: SessionSnapshot) -> WorkerHandle:
        handle = self._handle(snapshot.id)
        if handle is None:
            raise InvalidSessionStateError(
                f"Session {snapshot.id} has no attached worker", session_id=snapshot.id
            )
        return handle

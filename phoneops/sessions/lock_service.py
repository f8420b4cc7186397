from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from phoneops.core.config import Settings
from phoneops.db.models import DeviceLock

logger = logging.getLogger(__name__)


class SessionConflictError(RuntimeError):
    """Command or creation conflicts with current state; ``session_id`` names the conflicting session."""

    def __init__(self, message: str, *, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


class DeviceLockedError(SessionConflictError):
    def __init__(self, device_id: str, owner_session_id: str | None):
        super().__init__(
            f"Device {device_id} is locked by session {owner_session_id}",
            session_id=owner_session_id,
        )
        self.device_id = device_id


class DeviceLockRegistry:
    """Lease-based at-most-one-session-per-device registry backed by ``device_locks``.

    Every method runs inside the caller's database transaction so lock changes
    commit or roll back together with the session record they guard.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.device_lock_ttl_seconds)

    def evict_expired(self, session: Session, device_id: str) -> str | None:
        """Drop an expired lease on ``device_id`` and return the session that held it."""
        now = self._now()
        lock = session.get(DeviceLock, device_id)
        if lock is None or self._coerce_utc(lock.expires_at) > now:
            return None
        owner = lock.owner_session_id
        session.delete(lock)
        session.flush()
        logger.warning("Evicted expired lease on device %s held by session %s", device_id, owner)
        return owner

    def acquire(self, session: Session, device_id: str, session_id: str) -> None:
        now = self._now()
        lock = DeviceLock(
            device_id=device_id,
            owner_session_id=session_id,
            acquired_at=now,
            heartbeat_at=now,
            expires_at=now + self._lease_delta(),
        )
        session.add(lock)

        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise DeviceLockedError(device_id, self.owner_of(session, device_id)) from exc

    def refresh(self, session: Session, device_id: str, session_id: str) -> bool:
        now = self._now()
        lock = session.scalar(
            select(DeviceLock).where(
                DeviceLock.device_id == device_id,
                DeviceLock.owner_session_id == session_id,
            )
        )
        if lock is None:
            return False

        lock.heartbeat_at = now
        lock.expires_at = now + self._lease_delta()
        session.flush()
        return True

    def release(self, session: Session, device_id: str, session_id: str) -> bool:
        """Release the lease if ``session_id`` owns it; returns False when it did not (already released)."""
        result = session.execute(
            delete(DeviceLock).where(
                DeviceLock.device_id == device_id,
                DeviceLock.owner_session_id == session_id,
            )
        )
        released = int(result.rowcount or 0) > 0
        if not released:
            logger.debug("Release of device %s by non-owner session %s ignored", device_id, session_id)
        return released

    def owner_of(self, session: Session, device_id: str) -> str | None:
        return session.scalar(select(DeviceLock.owner_session_id).where(DeviceLock.device_id == device_id))

    def expired_owner(self, session: Session, device_id: str) -> str | None:
        """Session holding an expired lease on ``device_id``, without touching the lease."""
        lock = session.get(DeviceLock, device_id)
        if lock is None or self._coerce_utc(lock.expires_at) > self._now():
            return None
        return lock.owner_session_id

    def devices_held_by(self, session: Session, session_id: str) -> list[str]:
        return list(
            session.scalars(
                select(DeviceLock.device_id)
                .where(DeviceLock.owner_session_id == session_id)
                .order_by(DeviceLock.device_id.asc())
            ).all()
        )

    def is_owned_and_alive(self, session: Session, device_id: str, session_id: str) -> bool:
        now = self._now()
        lock = session.scalar(
            select(DeviceLock).where(
                DeviceLock.device_id == device_id,
                DeviceLock.owner_session_id == session_id,
            )
        )
        if lock is None:
            return False
        return self._coerce_utc(lock.expires_at) > now


from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import phoneops.db.session as db_session_module
from phoneops.core.config import get_settings
from phoneops.db.init_db import initialize_database
from phoneops.db.models import DeviceLock, OperationSession, SessionKind, SessionStatus
from phoneops.sessions.lock_service import DeviceLockedError, DeviceLockRegistry
from phoneops.sessions.store import SessionNotFoundError, SessionStore


def setup_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SessionStore:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("PHONEOPS_STATE_ROOT", state_root.as_posix())
    monkeypatch.setenv("PHONEOPS_DEVICE_LOCK_TTL_SECONDS", "30")

    get_settings.cache_clear()
    db_session_module.dispose_engine()
    initialize_database()
    settings = get_settings()
    return SessionStore(settings, db_session_module.get_session_factory(), DeviceLockRegistry(settings))


def _fail(row: OperationSession, now: datetime) -> None:
    row.status = SessionStatus.FAILED
    row.error_code = "TEST"
    row.ended_at = now


def test_create_session_starts_pending_and_holds_device_lock(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)

    snapshot = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY, options={"deep_scan": True})

    assert snapshot.status == SessionStatus.PENDING
    assert snapshot.progress_percent == 0
    assert snapshot.counters == {}
    assert snapshot.result_summary is None
    assert snapshot.options == {"deep_scan": True}
    assert snapshot.created_at.tzinfo is not None
    assert store.holds_device_lock(snapshot)
    assert store.get(snapshot.id).id == snapshot.id


def test_second_active_session_on_device_conflicts_with_existing_id(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = setup_env(tmp_path, monkeypatch)
    first = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)

    with pytest.raises(DeviceLockedError) as exc_info:
        store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.DATA_ERASER)

    assert exc_info.value.session_id == first.id
    assert exc_info.value.device_id == "device-1"
    assert [item.id for item in store.list_active()] == [first.id]


def test_terminal_update_releases_device_lock(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    first = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)

    failed = store.update(first.id, _fail)

    assert failed.status == SessionStatus.FAILED
    assert failed.updated_at >= first.updated_at
    assert not store.holds_device_lock(failed)

    second = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)
    assert store.holds_device_lock(second)


def test_update_rolls_back_when_mutator_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    snapshot = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)

    def broken(row: OperationSession, now: datetime) -> None:
        row.progress_percent = 50
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.update(snapshot.id, broken)

    assert store.get(snapshot.id).progress_percent == 0


def test_get_and_update_unknown_session_raise_not_found(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)

    with pytest.raises(SessionNotFoundError):
        store.get("missing")
    with pytest.raises(SessionNotFoundError):
        store.update("missing", _fail)


def test_list_paginates_newest_first_per_owner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    created = [
        store.create(owner_id="user-a", device_id=f"device-{index}", kind=SessionKind.RECOVERY) for index in range(5)
    ]
    store.create(owner_id="user-b", device_id="device-other", kind=SessionKind.RECOVERY)

    seen: list[str] = []
    cursor: str | None = None
    pages = 0
    while True:
        page = store.list("user-a", limit=2, cursor=cursor)
        pages += 1
        assert len(page.items) <= 2
        seen.extend(item.id for item in page.items)
        if page.next_cursor is None:
            break
        cursor = page.next_cursor

    assert pages == 3
    assert sorted(seen) == sorted(item.id for item in created)
    assert len(set(seen)) == len(seen)
    created_order = [store.get(session_id).created_at for session_id in seen]
    assert created_order == sorted(created_order, reverse=True)


def test_list_filters_by_kind_and_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    recovery = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)
    eraser = store.create(owner_id="user-a", device_id="device-2", kind=SessionKind.DATA_ERASER)
    store.update(eraser.id, _fail)

    by_kind = store.list("user-a", kind=SessionKind.RECOVERY)
    by_status = store.list("user-a", status=SessionStatus.FAILED)

    assert [item.id for item in by_kind.items] == [recovery.id]
    assert [item.id for item in by_status.items] == [eraser.id]


def test_list_rejects_unknown_cursor(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    other = store.create(owner_id="user-b", device_id="device-1", kind=SessionKind.RECOVERY)

    with pytest.raises(ValueError):
        store.list("user-a", cursor="not-a-session")
    with pytest.raises(ValueError):
        store.list("user-a", cursor=other.id)


def test_expired_lease_is_evicted_and_previous_owner_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    stale = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)

    session_factory = db_session_module.get_session_factory()
    with session_factory() as session:
        lock = session.get(DeviceLock, "device-1")
        assert lock is not None
        lock.expires_at = datetime.now(tz=timezone.utc) - timedelta(seconds=1)
        session.commit()

    fresh = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)
    stale_after = store.get(stale.id)

    assert stale_after.status == SessionStatus.FAILED
    assert stale_after.error_code == "LOCK_LOST"
    assert stale_after.ended_at is not None
    assert store.holds_device_lock(fresh)
    assert not store.holds_device_lock(stale_after)


def test_related_devices_are_leased_with_the_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    transfer = store.create(
        owner_id="user-a",
        device_id="device-1",
        kind=SessionKind.TRANSFER,
        related_device_ids=["device-2", "device-2", "device-1"],
    )

    assert store.locked_devices(transfer.id) == ["device-1", "device-2"]
    with pytest.raises(DeviceLockedError) as exc_info:
        store.create(owner_id="user-a", device_id="device-2", kind=SessionKind.DATA_ERASER)
    assert exc_info.value.session_id == transfer.id
    assert exc_info.value.device_id == "device-2"

    with db_session_module.get_session_factory()() as session:
        lock = session.get(DeviceLock, "device-2")
        assert lock is not None
        lock.expires_at = datetime.now(tz=timezone.utc) - timedelta(seconds=1)
        session.commit()

    assert store.expired_lock_owner("device-2") == transfer.id
    eraser = store.create(owner_id="user-a", device_id="device-2", kind=SessionKind.DATA_ERASER)

    assert store.get(transfer.id).status == SessionStatus.FAILED
    assert store.locked_devices(transfer.id) == []
    assert store.locked_devices(eraser.id) == ["device-2"]


def test_stats_group_sessions_by_status_and_kind(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = setup_env(tmp_path, monkeypatch)
    finished = store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.RECOVERY)
    store.update(finished.id, _fail)
    store.create(owner_id="user-a", device_id="device-1", kind=SessionKind.DATA_ERASER)
    store.create(owner_id="user-b", device_id="device-2", kind=SessionKind.RECOVERY)

    stats = store.stats("user-a")

    assert stats.total == 2
    assert stats.since is None
    assert stats.by_status == {
        "pending": 1,
        "running": 0,
        "paused": 0,
        "completed": 0,
        "failed": 1,
        "cancelled": 0,
    }
    assert stats.by_kind["recovery"] == 1
    assert stats.by_kind["data_eraser"] == 1
    assert stats.by_kind["transfer"] == 0
    assert store.stats("user-a", since=datetime.now(tz=timezone.utc) + timedelta(days=1)).total == 0

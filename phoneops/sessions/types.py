from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from phoneops.db.models import SessionCommand, SessionKind, SessionStatus, TERMINAL_STATUSES


@dataclass(slots=True)
class SessionSnapshot:
    id: str
    owner_id: str
    device_id: str
    kind: SessionKind
    status: SessionStatus
    options: dict[str, Any]
    progress_percent: int
    counters: dict[str, Any]
    phase_label: str | None
    pending_command: SessionCommand | None
    command_requested_at: datetime | None
    last_heartbeat_at: datetime | None
    result_summary: dict[str, Any] | None
    error_code: str | None
    error_info: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    paused_at: datetime | None
    resumed_at: datetime | None
    ended_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class SessionListResult:
    items: list[SessionSnapshot]
    next_cursor: str | None


@dataclass(frozen=True, slots=True)
class SessionStats:
    generated_at: datetime
    since: datetime | None
    total: int
    by_status: dict[str, int]
    by_kind: dict[str, int]


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One frame pushed to progress subscribers.

    ``event`` is ``snapshot`` for the synthetic first frame a subscriber
    receives, ``progress`` for worker reports and ``status`` for state changes.
    """

    session_id: str
    event: str
    status: SessionStatus
    progress_percent: int
    counters: dict[str, Any]
    phase_label: str | None
    timestamp: datetime
    pending_command: SessionCommand | None = None
    result_summary: dict[str, Any] | None = None
    error_code: str | None = None
    error_info: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot, *, event: str, timestamp: datetime) -> "ProgressEvent":
        return cls(
            session_id=snapshot.id,
            event=event,
            status=snapshot.status,
            progress_percent=snapshot.progress_percent,
            counters=dict(snapshot.counters),
            phase_label=snapshot.phase_label,
            timestamp=timestamp,
            pending_command=snapshot.pending_command,
            result_summary=snapshot.result_summary,
            error_code=snapshot.error_code,
            error_info=snapshot.error_info,
        )


def event_to_dict(event: ProgressEvent) -> dict[str, Any]:
    return {
        "session_id": event.session_id,
        "event": event.event,
        "status": event.status.value,
        "progress_percent": event.progress_percent,
        "counters": event.counters,
        "phase_label": event.phase_label,
        "timestamp": event.timestamp.isoformat(),
        "pending_command": event.pending_command.value if event.pending_command else None,
        "result_summary": event.result_summary,
        "error_code": event.error_code,
        "error_info": event.error_info,
    }

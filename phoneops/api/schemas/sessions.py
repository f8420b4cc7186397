from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from phoneops.db.models import SessionKind


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_id: str = Field(min_length=1, max_length=128)
    kind: SessionKind
    options: dict[str, Any] = Field(default_factory=dict)


class SessionListResponse(BaseModel):
    items: list["SessionResponse"]
    next_cursor: str | None


class SessionResponse(BaseModel):
    id: str
    owner_id: str
    device_id: str
    kind: str
    status: str
    options: dict[str, Any]
    progress_percent: int
    counters: dict[str, Any]
    phase_label: str | None
    pending_command: str | None
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


class SessionStatsResponse(BaseModel):
    generated_at: datetime
    since: datetime | None
    total: int
    by_status: dict[str, int]
    by_kind: dict[str, int]


class SessionKindResponse(BaseModel):
    kind: SessionKind
    options_schema: dict[str, Any]


class SessionKindListResponse(BaseModel):
    items: list[SessionKindResponse]

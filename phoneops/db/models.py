from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SessionKind(str, Enum):
    RECOVERY = "recovery"
    TRANSFER = "transfer"
    SCREEN_UNLOCK = "screen_unlock"
    SYSTEM_REPAIR = "system_repair"
    DATA_ERASER = "data_eraser"
    FRP_BYPASS = "frp_bypass"
    ICLOUD_BYPASS = "icloud_bypass"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionCommand(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


ACTIVE_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.PENDING, SessionStatus.RUNNING, SessionStatus.PAUSED}
)
TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class OperationSession(Base):
    __tablename__ = "operation_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[SessionKind] = mapped_column(
        SAEnum(SessionKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[SessionStatus] = mapped_column(
        SAEnum(SessionStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=SessionStatus.PENDING,
    )
    options: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)

    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    counters: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    phase_label: Mapped[str | None] = mapped_column(String(64), nullable=True)

    pending_command: Mapped[SessionCommand | None] = mapped_column(
        SAEnum(SessionCommand, native_enum=False, values_callable=_enum_values),
        nullable=True,
    )
    command_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    result_summary: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_info: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sessions_owner_status", "owner_id", "status"),
        Index("ix_sessions_device_id", "device_id"),
        Index("ix_sessions_status_heartbeat", "status", "last_heartbeat_at"),
        Index("ix_sessions_created_id", "created_at", "id"),
    )


class DeviceLock(Base):
    __tablename__ = "device_locks"

    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("operation_sessions.id", ondelete="CASCADE"), nullable=False
    )
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_device_locks_owner_session_id", "owner_session_id"),
        Index("ix_device_locks_expires_at", "expires_at"),
    )

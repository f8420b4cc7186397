from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_session_bookkeeping_columns(conn: Connection) -> None:
    if not _table_exists(conn, "operation_sessions"):
        return

    if not _column_exists(conn, "operation_sessions", "resumed_at"):
        conn.execute(text("ALTER TABLE operation_sessions ADD COLUMN resumed_at DATETIME"))

    if not _column_exists(conn, "operation_sessions", "error_code"):
        conn.execute(text("ALTER TABLE operation_sessions ADD COLUMN error_code VARCHAR(64)"))


def _fail_duplicate_active_sessions(conn: Connection) -> None:
    conn.execute(
        text(
            """
            WITH ranked AS (
                SELECT
                    id,
                    ROW_NUMBER() OVER (
                        PARTITION BY device_id
                        ORDER BY
                            CASE lower(status)
                                WHEN 'running' THEN 0
                                WHEN 'paused' THEN 1
                                ELSE 2
                            END,
                            created_at ASC,
                            id ASC
                    ) AS row_num
                FROM operation_sessions
                WHERE lower(status) IN ('pending', 'running', 'paused')
            )
            UPDATE operation_sessions
            SET status = 'failed',
                pending_command = NULL,
                error_code = 'MIGRATION_ACTIVE_RECOVERY',
                error_info = 'Reclassified during migration to satisfy single active session per device',
                ended_at = COALESCE(ended_at, CURRENT_TIMESTAMP),
                updated_at = CURRENT_TIMESTAMP
            WHERE id IN (
                SELECT id
                FROM ranked
                WHERE row_num > 1
            )
            """
        )
    )


def _migration_0003_single_active_session_per_device(conn: Connection) -> None:
    if not _table_exists(conn, "operation_sessions"):
        return

    _fail_duplicate_active_sessions(conn)
    conn.execute(text("DROP INDEX IF EXISTS ux_sessions_single_active_device"))
    conn.execute(
        text(
            "CREATE UNIQUE INDEX ux_sessions_single_active_device "
            "ON operation_sessions (device_id) WHERE status IN ('pending', 'running', 'paused')"
        )
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="session_bookkeeping_columns",
        apply=_migration_0002_session_bookkeeping_columns,
    ),
    MigrationStep(
        version=3,
        name="single_active_session_per_device",
        apply=_migration_0003_single_active_session_per_device,
    ),
)


def apply_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )

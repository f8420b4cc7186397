from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from phoneops.core.config import Settings, get_settings

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_pragmas(settings: Settings) -> tuple[str, ...]:
    return (
        "PRAGMA journal_mode=WAL;",
        "PRAGMA synchronous=NORMAL;",
        f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};",
        "PRAGMA foreign_keys=ON;",
    )


def _install_sqlite_pragmas(engine: Engine, pragmas: tuple[str, ...]) -> None:
    @event.listens_for(engine, "connect")
    def _apply(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        try:
            for statement in pragmas:
                cursor.execute(statement)
        finally:
            cursor.close()


def get_engine() -> Engine:
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = settings.effective_database_url
    is_sqlite = url.startswith("sqlite")
    # Worker threads and the watchdog share one engine.
    connect_args: dict[str, object] = {"check_same_thread": False} if is_sqlite else {}

    engine = create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)
    if is_sqlite:
        _install_sqlite_pragmas(engine, _sqlite_pragmas(settings))
    _engine = engine
    return engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_factory


def dispose_engine() -> None:
    """Close pooled connections and forget the singletons so the next caller rebuilds them."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from phoneops.api.routes.health import router as health_router
from phoneops.api.routes.sessions import router as sessions_router
from phoneops.auth.gate import AuthorizationGate, HttpxOwnershipGate, build_gate
from phoneops.core.config import get_settings
from phoneops.core.logging import configure_logging
from phoneops.db.init_db import initialize_database
from phoneops.db.session import dispose_engine, get_session_factory
from phoneops.sessions.broadcaster import ProgressBroadcaster
from phoneops.sessions.controller import SessionController
from phoneops.sessions.lock_service import DeviceLockRegistry
from phoneops.sessions.store import SessionStore
from phoneops.sessions.watchdog import SessionWatchdog
from phoneops.workers.adapter import DeviceAdapter, SimulatedDeviceAdapter
from phoneops.workers.registry import WorkerRegistry, build_default_registry


def create_app(
    *,
    gate: AuthorizationGate | None = None,
    adapter: DeviceAdapter | None = None,
    registry: WorkerRegistry | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings.log_level)
        initialize_database()

        ownership_gate = gate or build_gate(settings)
        device_adapter = adapter or SimulatedDeviceAdapter(
            item_count=settings.simulated_item_count,
            step_seconds=settings.simulated_step_seconds,
        )
        broadcaster = ProgressBroadcaster(queue_size=settings.subscriber_queue_size)
        controller = SessionController(
            settings,
            SessionStore(settings, get_session_factory(), DeviceLockRegistry(settings)),
            broadcaster,
            ownership_gate,
            registry or build_default_registry(settings, device_adapter),
        )
        controller.recover_orphaned_sessions()
        watchdog = SessionWatchdog(controller, settings.watchdog_interval_seconds)
        watchdog.start()

        app.state.controller = controller
        app.state.broadcaster = broadcaster
        app.state.watchdog = watchdog
        try:
            yield
        finally:
            watchdog.stop()
            controller.shutdown(timeout=settings.cancel_grace_seconds)
            if gate is None and isinstance(ownership_gate, HttpxOwnershipGate):
                ownership_gate.close()
            dispose_engine()

    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(sessions_router, prefix="/api/v1")
    return app

from __future__ import annotations

from typing import Iterable

from phoneops.core.config import Settings
from phoneops.db.models import SessionKind
from phoneops.workers.adapter import DeviceAdapter
from phoneops.workers.advanced import (
    DataEraserWorker,
    FrpBypassWorker,
    ICloudBypassWorker,
    ScreenUnlockWorker,
    SystemRepairWorker,
)
from phoneops.workers.base import OperationWorker
from phoneops.workers.recovery import RecoveryWorker
from phoneops.workers.transfer import TransferWorker


class UnsupportedSessionKindError(ValueError):
    pass


class WorkerRegistry:
    def __init__(self, workers: Iterable[OperationWorker] = ()):
        self._workers: dict[SessionKind, OperationWorker] = {}
        for worker in workers:
            self.register(worker)

    def register(self, worker: OperationWorker) -> None:
        self._workers[worker.kind] = worker

    def get(self, kind: SessionKind) -> OperationWorker:
        worker = self._workers.get(kind)
        if worker is None:
            raise UnsupportedSessionKindError(f"No worker registered for kind: {kind.value}")
        return worker

    def kinds(self) -> list[SessionKind]:
        return sorted(self._workers, key=lambda kind: kind.value)


def build_default_registry(settings: Settings, adapter: DeviceAdapter) -> WorkerRegistry:
    retry = {
        "retry_attempts": settings.adapter_retry_attempts,
        "retry_base_seconds": settings.adapter_retry_base_seconds,
    }
    return WorkerRegistry(
        [
            RecoveryWorker(adapter, **retry),
            TransferWorker(adapter, **retry),
            ScreenUnlockWorker(adapter, **retry),
            SystemRepairWorker(adapter, **retry),
            DataEraserWorker(adapter, **retry),
            FrpBypassWorker(adapter, **retry),
            ICloudBypassWorker(adapter, **retry),
        ]
    )

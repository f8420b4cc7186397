from phoneops.workers.adapter import DeviceAdapter, FoundItem, SimulatedDeviceAdapter, TransientAdapterError
from phoneops.workers.base import (
    InvalidSessionOptionsError,
    OperationFailed,
    OperationWorker,
    ThreadedWorker,
    WorkerOutcome,
    WorkerRun,
)
from phoneops.workers.registry import UnsupportedSessionKindError, WorkerRegistry, build_default_registry

__all__ = [
    "DeviceAdapter",
    "FoundItem",
    "SimulatedDeviceAdapter",
    "TransientAdapterError",
    "InvalidSessionOptionsError",
    "OperationFailed",
    "OperationWorker",
    "ThreadedWorker",
    "WorkerOutcome",
    "WorkerRun",
    "UnsupportedSessionKindError",
    "WorkerRegistry",
    "build_default_registry",
]

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Mapping, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from phoneops.db.models import SessionKind, SessionStatus
from phoneops.sessions.types import SessionSnapshot
from phoneops.workers.adapter import DeviceAdapter, TransientAdapterError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerCancelled(Exception):
    """Raised inside a worker body once cancellation has been observed."""


class InvalidSessionOptionsError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class WorkerOutcome:
    status: SessionStatus
    result_summary: dict[str, Any] | None = None
    error_code: str | None = None
    error_info: str | None = None

    @classmethod
    def completed(cls, result_summary: dict[str, Any] | None = None) -> "WorkerOutcome":
        return cls(status=SessionStatus.COMPLETED, result_summary=result_summary or {})

    @classmethod
    def failed(
        cls, error_code: str, error_info: str, result_summary: dict[str, Any] | None = None
    ) -> "WorkerOutcome":
        return cls(
            status=SessionStatus.FAILED,
            result_summary=result_summary,
            error_code=error_code,
            error_info=error_info,
        )

    @classmethod
    def cancelled(cls, result_summary: dict[str, Any] | None = None) -> "WorkerOutcome":
        return cls(status=SessionStatus.CANCELLED, result_summary=result_summary)


class WorkerCallbacks(Protocol):
    def on_progress(self, session_id: str, percent: int, counters: Mapping[str, Any], phase_label: str | None) -> None: ...

    def on_paused(self, session_id: str) -> None: ...

    def on_resumed(self, session_id: str) -> None: ...

    def on_terminal(self, session_id: str, outcome: WorkerOutcome) -> None: ...


class WorkerHandle(Protocol):
    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def cancel(self) -> None: ...

    def join(self, timeout: float | None = None) -> None: ...


class OperationFailed(Exception):
    """Raised by a worker body to end the session as failed with a specific code."""

    def __init__(self, error_code: str, message: str, result_summary: dict[str, Any] | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.result_summary = result_summary


class OperationWorker(ABC):
    """Contract every session kind implements.

    ``start`` returns a handle immediately; the work proceeds asynchronously and
    reports back exclusively through the supplied callbacks.
    """

    kind: ClassVar[SessionKind]
    options_model: ClassVar[type[BaseModel]]

    def parse_options(self, raw: Mapping[str, Any] | None) -> dict[str, Any]:
        try:
            model = self.options_model.model_validate(dict(raw or {}))
        except ValidationError as exc:
            raise InvalidSessionOptionsError(f"Invalid options for {self.kind.value}: {exc}") from exc
        return model.model_dump(mode="json")

    def options_schema(self) -> dict[str, Any]:
        return self.options_model.model_json_schema()

    def related_devices(self, options: Mapping[str, Any]) -> list[str]:
        """Devices other than the session's own that the caller must also own."""
        return []

    @abstractmethod
    def start(self, session: SessionSnapshot, callbacks: WorkerCallbacks) -> WorkerHandle:
        raise NotImplementedError


class WorkerRun:
    """Handle and execution context of one running worker thread."""

    def __init__(
        self,
        session: SessionSnapshot,
        callbacks: WorkerCallbacks,
        *,
        retry_attempts: int,
        retry_base_seconds: float,
    ):
        self.session = session
        self._callbacks = callbacks
        self._retry_attempts = retry_attempts
        self._retry_base_seconds = retry_base_seconds
        self._condition = threading.Condition()
        self._pause_requested = False
        self._cancel_requested = False
        self._last_percent = 0
        self._last_counters: dict[str, Any] = {}
        self._last_phase: str | None = None
        self.thread: threading.Thread | None = None

    @property
    def session_id(self) -> str:
        return self.session.id

    # Handle side, called by the controller.

    def pause(self) -> None:
        with self._condition:
            self._pause_requested = True
            self._condition.notify_all()

    def resume(self) -> None:
        with self._condition:
            self._pause_requested = False
            self._condition.notify_all()

    def cancel(self) -> None:
        with self._condition:
            self._cancel_requested = True
            self._condition.notify_all()

    def join(self, timeout: float | None = None) -> None:
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout)

    # Context side, called from the worker body.

    def report(self, percent: int, counters: Mapping[str, Any] | None = None, phase: str | None = None) -> None:
        self._last_percent = max(0, min(100, int(percent)))
        if counters is not None:
            self._last_counters = dict(counters)
        if phase is not None:
            self._last_phase = phase
        self._callbacks.on_progress(self.session_id, self._last_percent, dict(self._last_counters), self._last_phase)

    def heartbeat(self) -> None:
        self.report(self._last_percent)

    def checkpoint(self) -> None:
        """Honour pending pause/cancel requests; blocks while paused."""
        with self._condition:
            if self._cancel_requested:
                raise WorkerCancelled()
            if not self._pause_requested:
                return

        self._callbacks.on_paused(self.session_id)
        with self._condition:
            while self._pause_requested and not self._cancel_requested:
                self._condition.wait()
            if self._cancel_requested:
                raise WorkerCancelled()
        self._callbacks.on_resumed(self.session_id)

    def sleep(self, seconds: float) -> None:
        """Wait up to ``seconds``, waking early if cancellation is requested."""
        if seconds <= 0:
            return
        with self._condition:
            if not self._cancel_requested:
                self._condition.wait(timeout=seconds)
            if self._cancel_requested:
                raise WorkerCancelled()

    def call_adapter(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Invoke a device adapter call, retrying transient failures with exponential backoff."""
        attempt = 0
        while True:
            self.checkpoint()
            try:
                return func(*args, **kwargs)
            except TransientAdapterError as exc:
                attempt += 1
                if attempt >= self._retry_attempts:
                    raise
                delay = self._retry_base_seconds * (2 ** (attempt - 1))
                logger.info(
                    "Transient adapter error on session %s (attempt %d/%d): %s",
                    self.session_id,
                    attempt,
                    self._retry_attempts,
                    exc,
                )
                self.heartbeat()
                self.sleep(delay)


class ThreadedWorker(OperationWorker):
    """Runs each session's body on its own daemon thread."""

    def __init__(self, adapter: DeviceAdapter, *, retry_attempts: int = 3, retry_base_seconds: float = 0.5):
        self._adapter = adapter
        self._retry_attempts = retry_attempts
        self._retry_base_seconds = retry_base_seconds

    @property
    def adapter(self) -> DeviceAdapter:
        return self._adapter

    def start(self, session: SessionSnapshot, callbacks: WorkerCallbacks) -> WorkerRun:
        run = WorkerRun(
            session,
            callbacks,
            retry_attempts=self._retry_attempts,
            retry_base_seconds=self._retry_base_seconds,
        )
        thread = threading.Thread(
            target=self._execute,
            args=(run, callbacks),
            name=f"worker-{session.kind.value}-{session.id[:8]}",
            daemon=True,
        )
        run.thread = thread
        thread.start()
        return run

    def _execute(self, run: WorkerRun, callbacks: WorkerCallbacks) -> None:
        outcome: WorkerOutcome
        try:
            run.report(0, {}, "initializing")
            summary = self.run(run, run.session.options)
            outcome = WorkerOutcome.completed(summary)
        except WorkerCancelled:
            outcome = WorkerOutcome.cancelled()
        except OperationFailed as exc:
            outcome = WorkerOutcome.failed(exc.error_code, str(exc), exc.result_summary)
        except TransientAdapterError as exc:
            outcome = WorkerOutcome.failed("ADAPTER_ERROR", f"device communication failed: {exc}")
        except Exception as exc:
            logger.exception("Worker for session %s crashed", run.session_id)
            outcome = WorkerOutcome.failed("WORKER_ERROR", f"{exc.__class__.__name__}: {exc}")
        callbacks.on_terminal(run.session_id, outcome)

    @abstractmethod
    def run(self, run: WorkerRun, options: Mapping[str, Any]) -> dict[str, Any]:
        """Do the work; return the result summary. Raise OperationFailed to fail with a code."""
        raise NotImplementedError


def scaled_percent(done: int, total: int, *, start: int = 0, end: int = 100) -> int:
    if total <= 0:
        return end
    fraction = min(1.0, max(0.0, done / total))
    return start + int((end - start) * fraction)

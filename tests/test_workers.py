from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

import pytest

from phoneops.db.models import SessionKind, SessionStatus
from phoneops.sessions.types import SessionSnapshot
from phoneops.workers.adapter import FoundItem, SimulatedDeviceAdapter, TransientAdapterError
from phoneops.workers.advanced import (
    DataEraserWorker,
    FrpBypassWorker,
    PhasedWorker,
    ScreenUnlockWorker,
    SystemRepairOptions,
    SystemRepairWorker,
    total_unlock_attempts,
)
from phoneops.workers.base import InvalidSessionOptionsError, OperationWorker, WorkerOutcome, scaled_percent
from phoneops.workers.recovery import RecoveryWorker
from phoneops.workers.transfer import TransferWorker


class RecordingCallbacks:
    def __init__(self) -> None:
        self.progress: list[tuple[int, dict[str, Any], str | None]] = []
        self.paused = threading.Event()
        self.resumed = threading.Event()
        self.done = threading.Event()
        self.outcome: WorkerOutcome | None = None

    def on_progress(self, session_id: str, percent: int, counters: Mapping[str, Any], phase_label: str | None) -> None:
        self.progress.append((percent, dict(counters), phase_label))

    def on_paused(self, session_id: str) -> None:
        self.paused.set()

    def on_resumed(self, session_id: str) -> None:
        self.resumed.set()

    def on_terminal(self, session_id: str, outcome: WorkerOutcome) -> None:
        self.outcome = outcome
        self.done.set()

    def wait(self, timeout: float = 5.0) -> WorkerOutcome:
        assert self.done.wait(timeout), "worker did not finish"
        assert self.outcome is not None
        return self.outcome


class FlakyAdapter(SimulatedDeviceAdapter):
    def __init__(self, failures: int) -> None:
        super().__init__(item_count=4, step_seconds=0)
        self.failures = failures
        self.copy_calls = 0

    def copy(self, item: FoundItem, target: str) -> None:
        self.copy_calls += 1
        if self.copy_calls <= self.failures:
            raise TransientAdapterError("usb reset")


class GatedAdapter(SimulatedDeviceAdapter):
    """Blocks the first copy until the test releases it."""

    def __init__(self) -> None:
        super().__init__(item_count=12, step_seconds=0)
        self.entered = threading.Event()
        self.release = threading.Event()

    def copy(self, item: FoundItem, target: str) -> None:
        if not self.entered.is_set():
            self.entered.set()
            assert self.release.wait(5.0)


class ScriptedStepAdapter(SimulatedDeviceAdapter):
    def __init__(self, results: Mapping[str, Mapping[str, Any]] | None = None, crash_on: str | None = None) -> None:
        super().__init__(step_seconds=0)
        self.results = dict(results or {})
        self.crash_on = crash_on
        self.phases: list[str] = []

    def execute_step(self, device_id: str, operation: str, phase: str, options: Mapping[str, Any]) -> Mapping[str, Any]:
        self.phases.append(phase)
        if phase == self.crash_on:
            raise RuntimeError(f"adapter exploded during {phase}")
        return self.results.get(phase, {"phase": phase, "ok": True})

    def attempt_unlock(self, device_id: str, method: str, attempt: int) -> str | None:
        return None


def make_snapshot(worker: OperationWorker, raw_options: Mapping[str, Any], device_id: str = "device-1") -> SessionSnapshot:
    now = datetime.now(tz=timezone.utc)
    return SessionSnapshot(
        id=str(uuid4()),
        owner_id="user-a",
        device_id=device_id,
        kind=worker.kind,
        status=SessionStatus.PENDING,
        options=worker.parse_options(raw_options),
        progress_percent=0,
        counters={},
        phase_label=None,
        pending_command=None,
        command_requested_at=None,
        last_heartbeat_at=None,
        result_summary=None,
        error_code=None,
        error_info=None,
        created_at=now,
        updated_at=now,
        started_at=None,
        paused_at=None,
        resumed_at=None,
        ended_at=None,
    )


def run_to_end(worker: OperationWorker, raw_options: Mapping[str, Any]) -> tuple[WorkerOutcome, RecordingCallbacks]:
    callbacks = RecordingCallbacks()
    worker.start(make_snapshot(worker, raw_options), callbacks)
    return callbacks.wait(), callbacks


def test_recovery_copies_matching_items_with_monotonic_progress() -> None:
    adapter = SimulatedDeviceAdapter(item_count=20, step_seconds=0)
    worker = RecoveryWorker(adapter, retry_base_seconds=0.001)
    expected = list(adapter.scan("device-1", {"file_types": ["photos"]}))

    outcome, callbacks = run_to_end(worker, {"file_types": ["photos"], "target_path": "/recovered"})

    assert outcome.status == SessionStatus.COMPLETED
    assert outcome.result_summary is not None
    assert outcome.result_summary["items_recovered"] == len(expected)
    assert outcome.result_summary["bytes_recovered"] == sum(item.size_bytes for item in expected)
    assert outcome.result_summary["target_path"] == "/recovered"
    percents = [entry[0] for entry in callbacks.progress]
    assert percents[0] == 0
    assert callbacks.progress[0][2] == "initializing"
    assert percents == sorted(percents)
    assert max(percents) <= 99
    assert {"scanning", "recovering", "finalizing"}.issubset({entry[2] for entry in callbacks.progress})


def test_transfer_moves_selected_categories_to_target() -> None:
    adapter = SimulatedDeviceAdapter(item_count=14, step_seconds=0)
    worker = TransferWorker(adapter)
    expected = list(adapter.scan("device-1", {"data_types": ["photos", "contacts"]}))

    outcome, _callbacks = run_to_end(
        worker, {"target_device_id": "device-2", "data_types": ["photos", "photos", "contacts"]}
    )

    assert outcome.status == SessionStatus.COMPLETED
    assert outcome.result_summary is not None
    assert outcome.result_summary["data_types"] == ["photos", "contacts"]
    assert outcome.result_summary["target_device_id"] == "device-2"
    assert outcome.result_summary["items_transferred"] == len(expected)
    assert worker.related_devices({"target_device_id": "device-2"}) == ["device-2"]


def test_transient_adapter_errors_are_retried() -> None:
    adapter = FlakyAdapter(failures=2)
    worker = RecoveryWorker(adapter, retry_attempts=3, retry_base_seconds=0.001)

    outcome, _callbacks = run_to_end(worker, {})

    assert outcome.status == SessionStatus.COMPLETED
    assert outcome.result_summary is not None
    assert outcome.result_summary["items_recovered"] == 4


def test_persistent_transient_errors_fail_with_adapter_error() -> None:
    worker = RecoveryWorker(FlakyAdapter(failures=100), retry_attempts=2, retry_base_seconds=0.001)

    outcome, _callbacks = run_to_end(worker, {})

    assert outcome.status == SessionStatus.FAILED
    assert outcome.error_code == "ADAPTER_ERROR"
    assert "usb reset" in (outcome.error_info or "")


def test_unexpected_worker_exception_is_reported_as_failure() -> None:
    worker = SystemRepairWorker(ScriptedStepAdapter(crash_on="diagnosing"))

    outcome, _callbacks = run_to_end(worker, {"repair_type": "bootloop_fix"})

    assert outcome.status == SessionStatus.FAILED
    assert outcome.error_code == "WORKER_ERROR"
    assert "diagnosing" in (outcome.error_info or "")


def test_system_repair_skips_backup_phases_without_data_preservation() -> None:
    adapter = ScriptedStepAdapter(results={"performing_reset": {"issues_fixed": ["settings"]}})
    worker = SystemRepairWorker(adapter)

    outcome, callbacks = run_to_end(worker, {"repair_type": "factory_reset", "preserve_data": False})

    assert outcome.status == SessionStatus.COMPLETED
    assert adapter.phases == ["performing_reset"]
    assert outcome.result_summary == {
        "repair_type": "factory_reset",
        "phases_completed": 1,
        "issues_fixed": ["settings"],
        "data_preserved": False,
    }
    assert callbacks.progress[-1][1] == {"steps_done": 1, "steps_total": 1}


def test_data_eraser_runs_every_pass_and_verifies() -> None:
    adapter = ScriptedStepAdapter()
    worker = DataEraserWorker(adapter)

    outcome, callbacks = run_to_end(worker, {"erasure_type": "secure_erase", "chunks_per_pass": 2})

    assert outcome.status == SessionStatus.COMPLETED
    assert outcome.result_summary is not None
    assert outcome.result_summary["passes_completed"] == 3
    assert outcome.result_summary["verification_passed"] is True
    assert adapter.phases.count("random_pattern") == 2
    assert adapter.phases[-1] == "verifying_erasure"
    assert callbacks.progress[-1][1]["chunks_done"] == 6


def test_data_eraser_fails_when_verification_finds_data() -> None:
    worker = DataEraserWorker(ScriptedStepAdapter(results={"verifying_erasure": {"ok": False}}))

    outcome, _callbacks = run_to_end(worker, {"erasure_type": "quick_erase", "chunks_per_pass": 1})

    assert outcome.status == SessionStatus.FAILED
    assert outcome.error_code == "VERIFICATION_FAILED"
    assert outcome.result_summary == {"passes_completed": 1, "verification_passed": False}


def test_bypass_without_dedicated_plan_uses_generic_steps() -> None:
    adapter = ScriptedStepAdapter()

    outcome, _callbacks = run_to_end(FrpBypassWorker(adapter), {"bypass_method": "lg_frp_bypass"})

    assert outcome.status == SessionStatus.COMPLETED
    assert adapter.phases == ["device_detection", "preparation", "bypass_execution", "verification", "cleanup"]
    assert outcome.result_summary == {"bypass_method": "lg_frp_bypass", "steps_completed": 5}


def test_screen_unlock_reports_found_code() -> None:
    worker = ScreenUnlockWorker(SimulatedDeviceAdapter(step_seconds=0))

    outcome, _callbacks = run_to_end(worker, {"unlock_method": "pin_bruteforce", "pin_length": 4})

    assert outcome.status == SessionStatus.COMPLETED
    assert outcome.result_summary is not None
    attempts = outcome.result_summary["attempts"]
    assert 1 <= attempts <= 97
    assert outcome.result_summary["unlock_code"] == f"{attempts - 1:04d}"


def test_screen_unlock_fails_when_candidates_are_exhausted() -> None:
    worker = ScreenUnlockWorker(ScriptedStepAdapter())

    outcome, callbacks = run_to_end(worker, {"unlock_method": "pattern_analysis", "max_patterns": 50})

    assert outcome.status == SessionStatus.FAILED
    assert outcome.error_code == "UNLOCK_EXHAUSTED"
    assert outcome.result_summary == {"unlock_method": "pattern_analysis", "attempts": 50}
    assert callbacks.progress[-1][1]["attempts_done"] == 49


def test_total_unlock_attempts_respects_method_and_cap() -> None:
    assert total_unlock_attempts({"unlock_method": "pin_bruteforce", "pin_length": 4}) == 10_000
    assert total_unlock_attempts({"unlock_method": "pin_bruteforce", "pin_length": 6, "max_attempts": 500}) == 500
    assert total_unlock_attempts({"unlock_method": "password_dictionary", "dictionary_size": 42}) == 42
    assert total_unlock_attempts({"unlock_method": "biometric_bypass"}) == 1


def test_pause_blocks_at_checkpoint_until_resume() -> None:
    adapter = GatedAdapter()
    worker = RecoveryWorker(adapter)
    callbacks = RecordingCallbacks()
    handle = worker.start(make_snapshot(worker, {}), callbacks)

    assert adapter.entered.wait(5.0)
    handle.pause()
    adapter.release.set()

    assert callbacks.paused.wait(5.0)
    assert not callbacks.done.wait(0.1)
    handle.resume()

    assert callbacks.resumed.wait(5.0)
    assert callbacks.wait().status == SessionStatus.COMPLETED
    handle.join(5.0)


def test_cancel_is_observed_at_next_checkpoint() -> None:
    adapter = GatedAdapter()
    worker = RecoveryWorker(adapter)
    callbacks = RecordingCallbacks()
    handle = worker.start(make_snapshot(worker, {}), callbacks)

    assert adapter.entered.wait(5.0)
    handle.cancel()
    adapter.release.set()

    outcome = callbacks.wait()
    assert outcome.status == SessionStatus.CANCELLED
    assert outcome.error_code is None


def test_cancel_while_paused_ends_the_worker() -> None:
    adapter = GatedAdapter()
    worker = RecoveryWorker(adapter)
    callbacks = RecordingCallbacks()
    handle = worker.start(make_snapshot(worker, {}), callbacks)

    assert adapter.entered.wait(5.0)
    handle.pause()
    adapter.release.set()
    assert callbacks.paused.wait(5.0)

    handle.cancel()

    assert callbacks.wait().status == SessionStatus.CANCELLED
    assert not callbacks.resumed.is_set()


def test_invalid_options_are_rejected() -> None:
    adapter = SimulatedDeviceAdapter(step_seconds=0)

    with pytest.raises(InvalidSessionOptionsError):
        RecoveryWorker(adapter).parse_options({"recovery_type": "wishful_thinking"})
    with pytest.raises(InvalidSessionOptionsError):
        TransferWorker(adapter).parse_options({"target_device_id": "device-2"})
    with pytest.raises(InvalidSessionOptionsError):
        DataEraserWorker(adapter).parse_options({"chunks_per_pass": 0})

    assert DataEraserWorker(adapter).kind == SessionKind.DATA_ERASER


def test_scaled_percent_bounds() -> None:
    assert scaled_percent(0, 10, start=20, end=80) == 20
    assert scaled_percent(5, 10, start=20, end=80) == 50
    assert scaled_percent(15, 10, start=20, end=80) == 80
    assert scaled_percent(0, 0, start=20, end=80) == 80


def test_phased_worker_without_phase_plan_cannot_be_built() -> None:
    class UnplannedRepairWorker(PhasedWorker):
        kind = SessionKind.SYSTEM_REPAIR
        options_model = SystemRepairOptions
        operation = "system_repair"

    with pytest.raises(TypeError):
        UnplannedRepairWorker(SimulatedDeviceAdapter(step_seconds=0))


def test_options_schema_describes_accepted_options() -> None:
    schema = TransferWorker(SimulatedDeviceAdapter(step_seconds=0)).options_schema()

    assert schema["additionalProperties"] is False
    assert set(schema["required"]) == {"target_device_id", "data_types"}
    assert "transfer_type" in schema["properties"]

from __future__ import annotations

import argparse
import collections
import os
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

import phoneops.db.session as db_session_module
from phoneops.auth.gate import StaticOwnershipGate
from phoneops.core.config import get_settings
from phoneops.db.init_db import initialize_database
from phoneops.db.models import SessionKind
from phoneops.sessions.broadcaster import ProgressBroadcaster
from phoneops.sessions.controller import SessionController
from phoneops.sessions.lock_service import DeviceLockedError, DeviceLockRegistry
from phoneops.sessions.store import SessionStore
from phoneops.workers.adapter import SimulatedDeviceAdapter
from phoneops.workers.registry import build_default_registry

BENCH_USER = "bench-user"


@dataclass(slots=True)
class RunStats:
    elapsed_seconds: float
    requests: int
    created: int
    conflicts: int
    failed: int
    double_active_devices: int
    latency_p50_ms: float
    latency_p95_ms: float
    error_top: list[tuple[str, int]]

    @property
    def throughput_rps(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.requests / self.elapsed_seconds

    @property
    def conflict_ratio(self) -> float:
        if self.requests <= 0:
            return 0.0
        return self.conflicts / self.requests

    @property
    def failed_ratio(self) -> float:
        if self.requests <= 0:
            return 0.0
        return self.failed / self.requests


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark session creation under per-device lock contention")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--devices", type=int, default=20, help="Number of devices requests are spread over")
    parser.add_argument("--requests", type=int, default=2000, help="Total create requests")
    parser.add_argument("--workers", type=int, default=12, help="Concurrent request threads")
    parser.add_argument(
        "--kind",
        default=SessionKind.SYSTEM_REPAIR.value,
        choices=[kind.value for kind in SessionKind if kind != SessionKind.TRANSFER],
        help="Session kind to create",
    )
    parser.add_argument("--step-seconds", type=float, default=0.0, help="Simulated adapter delay per step")
    parser.add_argument("--seed", type=int, default=20261017, help="Random seed")
    parser.add_argument("--min-throughput-rps", type=float, default=None, help="Fail if throughput is below threshold")
    parser.add_argument("--max-failed-ratio", type=float, default=None, help="Fail if failed ratio is above threshold")
    return parser.parse_args()


def configure_env(state_root: Path) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["PHONEOPS_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    db_session_module.dispose_engine()


def build_controller(device_ids: list[str], step_seconds: float) -> tuple[SessionController, SessionStore]:
    settings = get_settings()
    store = SessionStore(settings, db_session_module.get_session_factory(), DeviceLockRegistry(settings))
    gate = StaticOwnershipGate.from_mapping({device_id: BENCH_USER for device_id in device_ids})
    adapter = SimulatedDeviceAdapter(item_count=5, step_seconds=step_seconds)
    controller = SessionController(
        settings,
        store,
        ProgressBroadcaster(queue_size=settings.subscriber_queue_size),
        gate,
        build_default_registry(settings, adapter),
    )
    return controller, store


def percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    if len(values) == 1:
        return values[0]
    sorted_values = sorted(values)
    index = int(round((len(sorted_values) - 1) * ratio))
    index = max(0, min(index, len(sorted_values) - 1))
    return sorted_values[index]


def run_benchmark(
    *,
    controller: SessionController,
    store: SessionStore,
    device_ids: list[str],
    requests: int,
    workers: int,
    kind: SessionKind,
    seed: int,
) -> RunStats:
    rng = random.Random(seed)
    request_devices = [rng.choice(device_ids) for _ in range(requests)]

    created = 0
    conflicts = 0
    failed = 0
    latencies_ms: list[float] = []
    error_counter: collections.Counter[str] = collections.Counter()

    def create_once(device_id: str) -> tuple[str, float, str | None]:
        started = time.perf_counter()
        try:
            controller.create_session(BENCH_USER, device_id, kind, {})
            return ("created", (time.perf_counter() - started) * 1000.0, None)
        except DeviceLockedError:
            return ("conflict", (time.perf_counter() - started) * 1000.0, None)
        except Exception as exc:
            signature = f"{exc.__class__.__name__}:{str(exc).strip()[:180]}"
            return ("failed", (time.perf_counter() - started) * 1000.0, signature)

    double_active = 0
    start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = [executor.submit(create_once, device_id) for device_id in request_devices]
        for future in as_completed(futures):
            outcome, latency_ms, error_sig = future.result()
            if outcome == "created":
                created += 1
            elif outcome == "conflict":
                conflicts += 1
            else:
                failed += 1
                if error_sig:
                    error_counter[error_sig] += 1
            latencies_ms.append(latency_ms)

            per_device = collections.Counter(snapshot.device_id for snapshot in store.list_active())
            double_active = max(double_active, sum(1 for count in per_device.values() if count > 1))
    elapsed = time.perf_counter() - start

    return RunStats(
        elapsed_seconds=elapsed,
        requests=requests,
        created=created,
        conflicts=conflicts,
        failed=failed,
        double_active_devices=double_active,
        latency_p50_ms=percentile(latencies_ms, 0.50),
        latency_p95_ms=percentile(latencies_ms, 0.95),
        error_top=error_counter.most_common(5),
    )


def assert_thresholds(args: argparse.Namespace, stats: RunStats) -> None:
    failures: list[str] = []
    if stats.double_active_devices:
        failures.append(f"double_active_devices={stats.double_active_devices} > 0")
    if args.min_throughput_rps is not None and stats.throughput_rps < args.min_throughput_rps:
        failures.append(
            f"throughput_rps={stats.throughput_rps:.2f} < min_throughput_rps={args.min_throughput_rps:.2f}"
        )
    if args.max_failed_ratio is not None and stats.failed_ratio > args.max_failed_ratio:
        failures.append(
            f"failed_ratio={stats.failed_ratio:.4f} > max_failed_ratio={args.max_failed_ratio:.4f}"
        )
    if failures:
        raise RuntimeError("; ".join(failures))


def main() -> None:
    args = parse_args()
    configure_env(Path(args.state_root))
    initialize_database()
    device_ids = [f"bench-device-{index:04d}" for index in range(max(1, args.devices))]
    controller, store = build_controller(device_ids, step_seconds=max(0.0, args.step_seconds))

    try:
        stats = run_benchmark(
            controller=controller,
            store=store,
            device_ids=device_ids,
            requests=max(1, args.requests),
            workers=max(1, args.workers),
            kind=SessionKind(args.kind),
            seed=args.seed,
        )
    finally:
        controller.shutdown(timeout=5.0)

    print("== Device Contention Benchmark ==")
    print(f"requests={stats.requests}")
    print(f"created={stats.created}")
    print(f"conflicts={stats.conflicts}")
    print(f"failed={stats.failed}")
    print(f"double_active_devices={stats.double_active_devices}")
    print(f"elapsed_seconds={stats.elapsed_seconds:.3f}")
    print(f"throughput_rps={stats.throughput_rps:.2f}")
    print(f"conflict_ratio={stats.conflict_ratio:.4f}")
    print(f"failed_ratio={stats.failed_ratio:.4f}")
    print(f"latency_p50_ms={stats.latency_p50_ms:.2f}")
    print(f"latency_p95_ms={stats.latency_p95_ms:.2f}")
    if stats.error_top:
        print("top_errors:")
        for signature, count in stats.error_top:
            print(f"- {count}x {signature}")

    assert_thresholds(args, stats)


if __name__ == "__main__":
    main()

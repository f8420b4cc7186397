from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from phoneops.db.models import SessionKind
from phoneops.workers.adapter import FoundItem
from phoneops.workers.base import ThreadedWorker, WorkerRun, scaled_percent

RecoveryType = Literal[
    "deleted_files",
    "formatted_drive",
    "corrupted_files",
    "system_crash",
    "virus_attack",
    "hardware_failure",
]

SCAN_END_PERCENT = 30
ANALYZE_END_PERCENT = 40
RECOVER_END_PERCENT = 99


class RecoveryOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recovery_type: RecoveryType = "deleted_files"
    file_types: list[str] = Field(default_factory=list)
    deep_scan: bool = False
    target_path: str = Field(default="recovered", min_length=1, max_length=1024)


class RecoveryWorker(ThreadedWorker):
    """Scans a device for recoverable items and copies them to the recovery target.

    Progress is split across phases: scanning up to 30%, analysing up to 40%,
    recovering up to 99%; the final percent is set on completion.
    """

    kind = SessionKind.RECOVERY
    options_model = RecoveryOptions

    def run(self, run: WorkerRun, options: Mapping[str, Any]) -> dict[str, Any]:
        device_id = run.session.device_id
        target_path = str(options["target_path"])

        found: list[FoundItem] = []
        run.report(1, {"items_found": 0}, "scanning")
        scan = self.adapter.scan(device_id, options)
        for item in scan:
            run.checkpoint()
            found.append(item)
            run.report(min(SCAN_END_PERCENT - 1, 1 + len(found) // 4), {"items_found": len(found)}, "scanning")

        run.report(SCAN_END_PERCENT, {"items_found": len(found)}, "analyzing")
        wanted = set(options.get("file_types") or ())
        candidates = [item for item in found if not wanted or item.category in wanted]
        items_total = len(candidates)
        bytes_total = sum(item.size_bytes for item in candidates)
        counters: dict[str, Any] = {
            "items_found": len(found),
            "items_total": items_total,
            "items_done": 0,
            "bytes_total": bytes_total,
            "bytes_done": 0,
        }
        run.report(ANALYZE_END_PERCENT, counters, "recovering")

        for index, item in enumerate(candidates, start=1):
            run.call_adapter(self.adapter.copy, item, target_path)
            counters["items_done"] = index
            counters["bytes_done"] += item.size_bytes
            run.report(
                scaled_percent(index, items_total, start=ANALYZE_END_PERCENT, end=RECOVER_END_PERCENT),
                counters,
                "recovering",
            )

        run.report(RECOVER_END_PERCENT, counters, "finalizing")
        return {
            "recovery_type": options["recovery_type"],
            "items_found": len(found),
            "items_recovered": counters["items_done"],
            "bytes_recovered": counters["bytes_done"],
            "target_path": target_path,
        }

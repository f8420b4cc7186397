from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator

from phoneops.db.models import SessionKind
from phoneops.workers.base import ThreadedWorker, WorkerRun, scaled_percent

TransferType = Literal["full_transfer", "selective_transfer", "backup_restore", "clone_device"]
DataType = Literal[
    "contacts",
    "photos",
    "videos",
    "music",
    "documents",
    "apps",
    "messages",
    "call_logs",
    "calendar",
    "notes",
]


class TransferOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_device_id: str = Field(min_length=1, max_length=128)
    transfer_type: TransferType = "full_transfer"
    data_types: list[DataType] = Field(min_length=1)

    @model_validator(mode="after")
    def _dedupe_data_types(self) -> "TransferOptions":
        self.data_types = list(dict.fromkeys(self.data_types))
        return self


class TransferWorker(ThreadedWorker):
    """Moves selected data categories from the session's device to a target device."""

    kind = SessionKind.TRANSFER
    options_model = TransferOptions

    def related_devices(self, options: Mapping[str, Any]) -> list[str]:
        return [str(options["target_device_id"])]

    def run(self, run: WorkerRun, options: Mapping[str, Any]) -> dict[str, Any]:
        source_id = run.session.device_id
        target_id = str(options["target_device_id"])
        data_types = list(options["data_types"])

        run.report(2, {}, "preparing")
        run.call_adapter(self.adapter.execute_step, target_id, "transfer", "preparing", options)

        run.report(5, {"items_found": 0}, "scanning_source")
        items = []
        for item in self.adapter.scan(source_id, {"data_types": data_types}):
            run.checkpoint()
            items.append(item)
            run.report(min(19, 5 + len(items) // 4), {"items_found": len(items)}, "scanning_source")

        items_total = len(items)
        counters: dict[str, Any] = {
            "items_total": items_total,
            "items_done": 0,
            "bytes_total": sum(item.size_bytes for item in items),
            "bytes_done": 0,
        }
        run.report(20, counters, "transferring")
        for index, item in enumerate(items, start=1):
            run.call_adapter(self.adapter.copy, item, target_id)
            counters["items_done"] = index
            counters["bytes_done"] += item.size_bytes
            run.report(scaled_percent(index, items_total, start=20, end=95), counters, "transferring")

        run.report(95, counters, "verifying")
        run.call_adapter(self.adapter.execute_step, target_id, "transfer", "verifying", options)
        return {
            "transfer_type": options["transfer_type"],
            "target_device_id": target_id,
            "data_types": data_types,
            "items_transferred": counters["items_done"],
            "bytes_transferred": counters["bytes_done"],
        }

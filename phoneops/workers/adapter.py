"""Device communication capabilities consumed by operation workers."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol


class TransientAdapterError(RuntimeError):
    """Recoverable device communication failure; workers may retry it."""


@dataclass(frozen=True, slots=True)
class FoundItem:
    item_id: str
    category: str
    path: str
    size_bytes: int


class DeviceAdapter(Protocol):
    """Interface for talking to a physical device."""

    def scan(self, device_id: str, options: Mapping[str, Any]) -> Iterable[FoundItem]:
        """Yield items discovered on the device."""

    def copy(self, item: FoundItem, target: str) -> None:
        """Copy one item to a target path or device."""

    def execute_step(self, device_id: str, operation: str, phase: str, options: Mapping[str, Any]) -> Mapping[str, Any]:
        """Run one phase of an advanced operation and return its details."""

    def attempt_unlock(self, device_id: str, method: str, attempt: int) -> str | None:
        """Try one unlock candidate; return the unlock code on success."""


_CATEGORIES = ("photos", "videos", "documents", "messages", "contacts", "music", "notes")


class SimulatedDeviceAdapter:
    """Deterministic stand-in for device hardware.

    Items and unlock outcomes derive from a hash of the device id so repeated
    runs against the same device behave identically.
    """

    def __init__(self, *, item_count: int = 40, step_seconds: float = 0.05):
        self._item_count = item_count
        self._step_seconds = step_seconds

    def _pause(self) -> None:
        if self._step_seconds > 0:
            time.sleep(self._step_seconds)

    def _seed(self, device_id: str) -> int:
        return int.from_bytes(hashlib.sha256(device_id.encode("utf-8")).digest()[:4], "big")

    def scan(self, device_id: str, options: Mapping[str, Any]) -> Iterable[FoundItem]:
        seed = self._seed(device_id)
        wanted = set(options.get("file_types") or options.get("data_types") or ())
        for index in range(self._item_count):
            category = _CATEGORIES[(seed + index) % len(_CATEGORIES)]
            self._pause()
            if wanted and category not in wanted:
                continue
            yield FoundItem(
                item_id=f"{device_id}-{index:05d}",
                category=category,
                path=f"/{category}/item-{index:05d}",
                size_bytes=1024 * (1 + (seed + index * 7) % 4096),
            )

    def copy(self, item: FoundItem, target: str) -> None:
        self._pause()

    def execute_step(self, device_id: str, operation: str, phase: str, options: Mapping[str, Any]) -> Mapping[str, Any]:
        self._pause()
        return {"phase": phase, "ok": True}

    def attempt_unlock(self, device_id: str, method: str, attempt: int) -> str | None:
        if self._step_seconds > 0:
            time.sleep(self._step_seconds / 10)
        if attempt == self._seed(device_id) % 97:
            return f"{attempt:04d}"
        return None

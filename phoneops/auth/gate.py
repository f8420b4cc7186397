"""Device ownership checks delegated to the identity/device service."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Mapping, Protocol

import httpx

from phoneops.core.config import Settings


class OwnershipServiceError(RuntimeError):
    """The ownership service could not answer."""


class AuthorizationGate(Protocol):
    """Interface for confirming that a user owns a device."""

    def owns_device(self, user_id: str, device_id: str) -> bool:
        """Return True when ``user_id`` owns ``device_id``."""


@dataclass
class StaticOwnershipGate:
    """In-process ownership table keyed by device id."""

    owners: dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_mapping(cls, owners: Mapping[str, str]) -> "StaticOwnershipGate":
        return cls(owners=dict(owners))

    def grant(self, user_id: str, device_id: str) -> None:
        with self._lock:
            self.owners[device_id] = user_id

    def revoke(self, device_id: str) -> None:
        with self._lock:
            self.owners.pop(device_id, None)

    def owns_device(self, user_id: str, device_id: str) -> bool:
        with self._lock:
            return self.owners.get(device_id) == user_id


@dataclass
class HttpxOwnershipGate:
    """HTTPX-backed gate: ``GET {base_url}/users/{user}/devices/{device}``.

    200 means owned; 403 and 404 mean not owned; anything else is an outage.
    """

    base_url: str
    http_client: httpx.Client
    timeout: float = 5.0

    @classmethod
    def create(cls, base_url: str, timeout: float = 5.0) -> "HttpxOwnershipGate":
        return cls(base_url=base_url.rstrip("/"), http_client=httpx.Client(), timeout=timeout)

    def owns_device(self, user_id: str, device_id: str) -> bool:
        url = f"{self.base_url}/users/{user_id}/devices/{device_id}"
        try:
            response = self.http_client.get(url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise OwnershipServiceError(f"Ownership service unreachable: {exc}") from exc
        if response.status_code in (403, 404):
            return False
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise OwnershipServiceError(f"Ownership service returned {response.status_code}") from exc
        body = response.json()
        if isinstance(body, dict) and "owned" in body:
            return bool(body["owned"])
        return True

    def close(self) -> None:
        self.http_client.close()


def build_gate(settings: Settings) -> AuthorizationGate:
    if settings.ownership_service_url:
        return HttpxOwnershipGate.create(
            settings.ownership_service_url,
            timeout=settings.ownership_service_timeout_seconds,
        )
    return StaticOwnershipGate.from_mapping(settings.device_owners)

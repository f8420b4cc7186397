"""Tests for device ownership gates."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from phoneops.auth.gate import HttpxOwnershipGate, OwnershipServiceError, StaticOwnershipGate, build_gate
from phoneops.core.config import Settings


def _gate(handler) -> HttpxOwnershipGate:  # type: ignore[no-untyped-def]
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpxOwnershipGate(base_url="http://identity.local/api", http_client=client)


def test_httpx_gate_queries_user_device_path() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"owned": True})

    assert _gate(handler).owns_device("user-a", "device-1") is True
    assert seen == ["/api/users/user-a/devices/device-1"]


def test_httpx_gate_honours_owned_flag_and_plain_success() -> None:
    assert _gate(lambda request: httpx.Response(200, json={"owned": False})).owns_device("u", "d") is False
    assert _gate(lambda request: httpx.Response(200, json={"device_id": "d"})).owns_device("u", "d") is True


@pytest.mark.parametrize("status_code", [403, 404])
def test_httpx_gate_treats_denials_as_not_owned(status_code: int) -> None:
    gate = _gate(lambda request: httpx.Response(status_code, json={"detail": "nope"}))

    assert gate.owns_device("user-a", "device-1") is False


def test_httpx_gate_raises_on_server_error() -> None:
    gate = _gate(lambda request: httpx.Response(502, text="bad gateway"))

    with pytest.raises(OwnershipServiceError):
        gate.owns_device("user-a", "device-1")


def test_httpx_gate_raises_on_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(OwnershipServiceError):
        _gate(handler).owns_device("user-a", "device-1")


def test_static_gate_grant_and_revoke() -> None:
    gate = StaticOwnershipGate.from_mapping({"device-1": "user-a"})

    assert gate.owns_device("user-a", "device-1")
    assert not gate.owns_device("user-b", "device-1")

    gate.grant("user-b", "device-2")
    gate.revoke("device-1")

    assert gate.owns_device("user-b", "device-2")
    assert not gate.owns_device("user-a", "device-1")


def test_build_gate_prefers_ownership_service(tmp_path: Path) -> None:
    remote = build_gate(Settings(state_root=tmp_path, ownership_service_url="http://identity.local/"))
    local = build_gate(Settings(state_root=tmp_path, device_owners={"device-1": "user-a"}))

    assert isinstance(remote, HttpxOwnershipGate)
    assert remote.base_url == "http://identity.local"
    remote.close()
    assert isinstance(local, StaticOwnershipGate)
    assert local.owns_device("user-a", "device-1")

#!/usr/bin/env python3
"""Self-tests for polling an access point over SSH (SSH is faked)."""

import asyncio
import os
import sys
from types import SimpleNamespace

import asyncssh
import pytest

sys.path.append(os.path.dirname(__file__))

import mca_dump
from mca_dump import DecodeError, FetchError, fetch
from unifi_ap_exporter import DeviceConfig


DEVICE = DeviceConfig(name="Lobby", address="10.0.0.10", username="admin", password="secret")
OUTPUT = '{"ip": "10.0.0.10", "model": "U7PG2", "system-stats": {"cpu": "3.5", "mem": "40"}}'


class FakeConnection:
    """Stand-in for asyncssh.SSHClientConnection used as a context manager."""

    def __init__(self, stdout=OUTPUT, run_error=None, delay=0.0):
        self.stdout = stdout
        self.run_error = run_error
        self.delay = delay
        self.commands = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    async def run(self, command, check=False):
        self.commands.append((command, check))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.run_error is not None:
            raise self.run_error
        return SimpleNamespace(stdout=self.stdout, exit_status=0)


@pytest.fixture
def fake_connect(monkeypatch):
    """Patch asyncssh.connect and record its keyword arguments."""
    state = {"conn": FakeConnection(), "calls": []}

    def connect(host, **kwargs):
        state["calls"].append((host, kwargs))
        if "error" in state:
            raise state["error"]
        return state["conn"]

    monkeypatch.setattr(mca_dump.asyncssh, "connect", connect)
    return state


def test_fetch_success(fake_connect) -> None:
    record = fetch(DEVICE, timeout=5)

    assert record.name == "Lobby"
    assert record.up == 1
    assert record.model == "U7PG2"
    assert record.system_stats.cpu == 3.5

    host, kwargs = fake_connect["calls"][0]
    assert host == "10.0.0.10"
    assert kwargs["port"] == 22
    assert kwargs["username"] == "admin"
    assert kwargs["password"] == "secret"
    assert kwargs["known_hosts"] is None
    assert kwargs["client_keys"] is None
    assert fake_connect["conn"].commands == [("mca-dump", True)]
    assert fake_connect["conn"].closed


def test_dial_failure(fake_connect) -> None:
    fake_connect["error"] = ConnectionRefusedError(111, "Connection refused")
    with pytest.raises(FetchError) as excinfo:
        fetch(DEVICE, timeout=5)
    assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)


def test_auth_failure(fake_connect) -> None:
    fake_connect["error"] = asyncssh.PermissionDenied("Permission denied")
    with pytest.raises(FetchError, match="Permission denied"):
        fetch(DEVICE, timeout=5)


def test_command_failure_closes_connection(fake_connect) -> None:
    fake_connect["conn"] = FakeConnection(run_error=asyncssh.ChannelOpenError(2, "open failed"))
    with pytest.raises(FetchError, match="open failed"):
        fetch(DEVICE, timeout=5)
    assert fake_connect["conn"].closed


def test_decode_failure_closes_connection(fake_connect) -> None:
    fake_connect["conn"] = FakeConnection(stdout='{"system-stats": {"cpu": "high"}}')
    with pytest.raises(DecodeError):
        fetch(DEVICE, timeout=5)
    assert fake_connect["conn"].closed


def test_timeout_closes_connection(fake_connect) -> None:
    fake_connect["conn"] = FakeConnection(delay=5)
    with pytest.raises(FetchError, match="no response within 0.05s"):
        fetch(DEVICE, timeout=0.05)
    assert fake_connect["conn"].closed


def test_missing_keyfile(fake_connect, tmp_path) -> None:
    device = DeviceConfig(name="AP", address="ap", username="admin", keyfile=str(tmp_path / "id_missing"))
    with pytest.raises(FetchError, match="cannot load keyfile"):
        fetch(device, timeout=5)
    assert fake_connect["calls"] == []


def test_unparseable_keyfile(fake_connect, tmp_path) -> None:
    keyfile = tmp_path / "id_rsa"
    keyfile.write_text("this is not a private key\n", encoding="utf-8")
    device = DeviceConfig(name="AP", address="ap", username="admin", keyfile=str(keyfile))
    with pytest.raises(FetchError, match="cannot load keyfile"):
        fetch(device, timeout=5)
    assert fake_connect["calls"] == []


def test_keyfile_is_offered(fake_connect, tmp_path) -> None:
    key = asyncssh.generate_private_key("ssh-ed25519")
    keyfile = tmp_path / "id_ed25519"
    key.write_private_key(str(keyfile))
    device = DeviceConfig(name="AP", address="ap", username="admin", keyfile=str(keyfile))

    record = fetch(device, timeout=5)

    assert record.up == 1
    _host, kwargs = fake_connect["calls"][0]
    assert kwargs["password"] is None
    assert len(kwargs["client_keys"]) == 1
    assert kwargs["client_keys"][0].get_algorithm() == "ssh-ed25519"

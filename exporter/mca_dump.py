#!/usr/bin/env python3
"""Fetch and decode the UniFi ``mca-dump`` status document over SSH."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type, TypeVar

import asyncssh

if TYPE_CHECKING:
    from unifi_ap_exporter import DeviceConfig


LOG = logging.getLogger("unifi_ap_exporter.mca_dump")

# "mca" stands for Management Control Agent
MCA_DUMP_COMMAND = "mca-dump"
SSH_PORT = 22
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

T = TypeVar("T")


class ExporterError(Exception):
    """Base exception for the exporter."""


class FetchError(ExporterError):
    """Raised when a single access point cannot be polled."""


class DecodeError(FetchError):
    """Raised when mca-dump output does not match the expected shape."""


def _number(key: Optional[str] = None, loose: bool = False) -> Any:
    """Numeric field; ``loose`` also accepts string-encoded numbers."""
    return field(default=0, metadata={"kind": "number", "mca_field": key, "loose": loose})


def _text(key: Optional[str] = None) -> Any:
    return field(default="", metadata={"kind": "text", "mca_field": key})


def _flag(key: Optional[str] = None) -> Any:
    return field(default=False, metadata={"kind": "flag", "mca_field": key})


def _block(model: Type[Any], key: Optional[str] = None) -> Any:
    return field(default_factory=model, metadata={"kind": "block", "mca_field": key, "model": model})


def _table(model: Type[Any], key: Optional[str] = None) -> Any:
    return field(default_factory=list, metadata={"kind": "table", "mca_field": key, "model": model})


@dataclass
class SystemStats:
    """CPU and memory utilisation in percent.

    Firmware prints these as strings (``"cpu": "12.5"``) on most releases.
    """

    cpu: float = _number(loose=True)
    mem: float = _number(loose=True)


@dataclass
class SysStats:
    """Load averages and memory figures in bytes."""

    loadavg_1: float = _number(loose=True)
    loadavg_5: float = _number(loose=True)
    loadavg_15: float = _number(loose=True)
    mem_used: int = _number(loose=True)
    mem_total: int = _number(loose=True)
    mem_buffer: int = _number(loose=True)


@dataclass
class Interface:
    """Entry of ``if_table``."""

    tx_bytes: int = _number()
    rx_bytes: int = _number()
    up: bool = _flag()


@dataclass
class ScanEntry:
    """Neighbouring (rogue) AP seen by a radio during a background scan."""

    bssid: str = _text()
    channel: int = _number()
    essid: str = _text()
    freq: int = _number()
    noise: int = _number()
    security: str = _text()
    signal: int = _number()


@dataclass
class Radio:
    """Entry of ``radio_table``."""

    radio: str = _text()
    name: str = _text()
    antenna_gain: int = _number("builtin_ant_gain")
    max_txpower: int = _number()
    min_txpower: int = _number()
    scan_table: List[ScanEntry] = _table(ScanEntry)


@dataclass
class Station:
    """Client associated to a VAP (entry of ``sta_table``)."""

    hostname: str = _text()
    mac: str = _text()
    tx_bytes: int = _number()
    rx_bytes: int = _number()
    noise: int = _number()
    signal: int = _number()


@dataclass
class Vap:
    """Virtual access point hosted on one radio (entry of ``vap_table``)."""

    name: str = _text()
    radio: str = _text()
    radio_name: str = _text()
    bssid: str = _text()
    essid: str = _text()
    channel: int = _number()
    usage: str = _text()
    rx_bytes: int = _number()
    rx_dropped: int = _number()
    rx_errors: int = _number()
    tx_bytes: int = _number()
    tx_dropped: int = _number()
    tx_errors: int = _number()
    tx_power: int = _number()
    tx_retries: int = _number()
    tx_success: int = _number()
    tx_total: int = _number()
    stations: List[Station] = _table(Station, "sta_table")


@dataclass
class DeviceStatusRecord:
    """Result of one access point poll.

    ``name`` comes from the exporter config, never from the device. ``up``
    is 1 when the poll succeeded and 0 for a placeholder record.
    """

    ip: str = _text()
    mac: str = _text()
    model: str = _text()
    model_name: str = _text("model_display")
    serial: str = _text()
    version: str = _text()
    uptime: int = _number()
    system_stats: SystemStats = _block(SystemStats, "system-stats")
    sys_stats: SysStats = _block(SysStats, "sys_stats")
    interfaces: List[Interface] = _table(Interface, "if_table")
    radios: List[Radio] = _table(Radio, "radio_table")
    vaps: List[Vap] = _table(Vap, "vap_table")
    name: str = ""
    up: int = 0

    @classmethod
    def placeholder(cls, name: str, ip: str) -> "DeviceStatusRecord":
        """Build the zero-valued record published for an unreachable AP."""
        return cls(ip=ip, name=name, up=0)


def _decode_number(value: Any, where: str, loose: bool) -> Any:
    if isinstance(value, bool):
        raise DecodeError(f"{where}: expected number, got boolean")
    if isinstance(value, int):
        if not INT64_MIN <= value <= INT64_MAX:
            raise DecodeError(f"{where}: integer does not fit in 64 bits")
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise DecodeError(f"{where}: {value!r} is not a finite number")
        return value
    if loose and isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise DecodeError(f"{where}: {value!r} is not a number") from exc
        if not math.isfinite(number):
            raise DecodeError(f"{where}: {value!r} is not a finite number")
        return number
    raise DecodeError(f"{where}: expected number, got {type(value).__name__}")


def _decode_model(model: Type[T], data: Any, where: str) -> T:
    if not isinstance(data, dict):
        raise DecodeError(f"{where}: expected object, got {type(data).__name__}")

    values: Dict[str, Any] = {}
    for spec in fields(model):
        kind = spec.metadata.get("kind")
        if kind is None:
            continue
        key = spec.metadata.get("mca_field") or spec.name
        raw = data.get(key)
        # null and missing both fall back to the zero value
        if raw is None:
            continue
        path = f"{where}.{key}"

        if kind == "number":
            values[spec.name] = _decode_number(raw, path, spec.metadata["loose"])
        elif kind == "text":
            if not isinstance(raw, str):
                raise DecodeError(f"{path}: expected string, got {type(raw).__name__}")
            values[spec.name] = raw
        elif kind == "flag":
            if not isinstance(raw, bool):
                raise DecodeError(f"{path}: expected boolean, got {type(raw).__name__}")
            values[spec.name] = raw
        elif kind == "block":
            values[spec.name] = _decode_model(spec.metadata["model"], raw, path)
        elif kind == "table":
            if not isinstance(raw, list):
                raise DecodeError(f"{path}: expected array, got {type(raw).__name__}")
            values[spec.name] = [
                _decode_model(spec.metadata["model"], entry, f"{path}[{index}]")
                for index, entry in enumerate(raw)
            ]

    return model(**values)


def _reject_constant(name: str) -> Any:
    raise DecodeError(f"invalid JSON from {MCA_DUMP_COMMAND}: {name} is not a number")


def decode_status(output: str) -> DeviceStatusRecord:
    """Decode raw mca-dump output into a DeviceStatusRecord.

    Args:
        output: Standard output of the mca-dump command.

    Returns:
        Decoded record with ``name`` empty and ``up`` 0.

    Raises:
        DecodeError: Output is not JSON or a field has the wrong shape.
    """
    try:
        data = json.loads(output, parse_constant=_reject_constant)
    except ValueError as exc:
        raise DecodeError(f"invalid JSON from {MCA_DUMP_COMMAND}: {exc}") from exc
    return _decode_model(DeviceStatusRecord, data, "$")


async def _run_mca_dump(device: "DeviceConfig") -> str:
    """Run mca-dump on one AP and return its standard output."""
    client_keys = None
    if device.keyfile:
        try:
            client_keys = [asyncssh.read_private_key(device.keyfile)]
        except (OSError, asyncssh.KeyImportError) as exc:
            raise FetchError(f"cannot load keyfile {device.keyfile}: {exc}") from exc

    # Host keys are not verified: APs ship self-signed or unknown host keys.
    async with asyncssh.connect(
        device.address,
        port=SSH_PORT,
        username=device.username,
        password=device.password or None,
        client_keys=client_keys,
        agent_path=None,
        known_hosts=None,
    ) as conn:
        result = await conn.run(MCA_DUMP_COMMAND, check=True)
    return result.stdout or ""


def fetch(device: "DeviceConfig", timeout: float) -> DeviceStatusRecord:
    """Poll one access point.

    Args:
        device: Access point to poll.
        timeout: Upper bound in seconds for connect, command and read.

    Returns:
        Decoded record stamped with the configured name and ``up`` = 1.

    Raises:
        FetchError: Any dial, auth, session, command, read or decode failure.
    """
    LOG.debug("%s: running %s", device.address, MCA_DUMP_COMMAND)
    try:
        output = asyncio.run(asyncio.wait_for(_run_mca_dump(device), timeout))
    except asyncio.TimeoutError as exc:
        raise FetchError(f"no response within {timeout:g}s") from exc
    except (asyncssh.Error, OSError) as exc:
        raise FetchError(str(exc) or type(exc).__name__) from exc

    record = decode_status(output)
    record.name = device.name
    record.up = 1
    return record

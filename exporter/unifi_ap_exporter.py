#!/usr/bin/env python3
"""UniFi Access Point Prometheus Exporter."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import asyncssh
import structlog
import yaml
from prometheus_client import REGISTRY, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from mca_dump import DeviceStatusRecord, ExporterError, FetchError, fetch


__version__ = "0.1.0"

LOG = logging.getLogger("unifi_ap_exporter")

NAMESPACE = "unifi_ap"
DEFAULT_CONFIG_PATH = "unifi-ap-exporter.yaml"
DEFAULT_PORT = 9130
DEFAULT_TIMEOUT_SECONDS = 30.0

GLOBAL_KEYS = ("port", "timeout")
ACCESSPOINT_KEYS = ("name", "address", "username", "password", "keyfile")

DEVICE_INFO_LABELS = ("ip", "mac", "model", "model_name", "name", "serial", "version")
DEVICE_LABELS = ("name", "model")
RADIO_LABELS = ("name", "radio", "radio_name")
ROGUE_LABELS = ("name", "radio", "bssid", "essid", "security")
VAP_LABELS = ("name", "vap_name", "bssid", "radio", "radio_name", "essid", "usage")
STATION_LABELS = ("name", "vap_name", "hostname", "mac")


class ConfigError(ExporterError):
    """Raised when the config file is missing, malformed or incomplete."""


class CollectionError(ExporterError):
    """Raised when a collection pass fails as a whole."""


@dataclass(frozen=True)
class GlobalConfig:
    """Process-wide settings."""

    port: int = DEFAULT_PORT
    timeout: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class DeviceConfig:
    """Access point to poll."""

    name: str
    address: str
    username: str
    password: Optional[str] = None
    keyfile: Optional[str] = None


@dataclass(frozen=True)
class ExporterConfig:
    """Validated exporter configuration."""

    global_config: GlobalConfig
    devices: Tuple[DeviceConfig, ...]


@dataclass(frozen=True)
class MetricSpec:
    """Descriptor of one exported metric family."""

    name: str
    documentation: str
    labels: Tuple[str, ...]
    kind: str  # "gauge" or "counter"


class Sample(NamedTuple):
    """One flattened series value."""

    name: str
    labels: Tuple[str, ...]
    value: float


def _check_keys(section: Dict[str, Any], allowed: Sequence[str], where: str) -> None:
    unknown = sorted(set(section) - set(allowed))
    if unknown:
        raise ConfigError(f"{where} has unknown field(s): {', '.join(unknown)}")


def _optional_str(entry: Dict[str, Any], key: str, index: int) -> Optional[str]:
    value = entry.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ConfigError(f"accesspoint #{index} has an invalid `{key}`")
    return str(value)


def build_config(data: Any) -> ExporterConfig:
    """Validate a parsed config document.

    Args:
        data: Result of yaml.safe_load.

    Returns:
        Immutable ExporterConfig.

    Raises:
        ConfigError: Document is empty, malformed or incomplete.
    """
    if not data:
        raise ConfigError("config is empty")
    if not isinstance(data, dict):
        raise ConfigError("config must be a mapping")
    _check_keys(data, ("global", "accesspoints"), "config")

    global_cfg = data.get("global") or {}
    if not isinstance(global_cfg, dict):
        raise ConfigError("`global` must be a mapping")
    _check_keys(global_cfg, GLOBAL_KEYS, "`global`")

    port = global_cfg.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"invalid listen port: {port!r}")
    timeout = global_cfg.get("timeout", DEFAULT_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError(f"invalid timeout: {timeout!r}")

    entries = data.get("accesspoints") or []
    if not isinstance(entries, list):
        raise ConfigError("`accesspoints` must be a list")
    if not entries:
        raise ConfigError("no access points defined")

    devices: List[DeviceConfig] = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ConfigError(f"accesspoint #{index} must be a mapping")
        _check_keys(entry, ACCESSPOINT_KEYS, f"accesspoint #{index}")
        required = {}
        for key in ("name", "address", "username"):
            value = _optional_str(entry, key, index)
            if value is None:
                raise ConfigError(f"accesspoint #{index} is missing `{key}`")
            required[key] = value
        password = _optional_str(entry, "password", index)
        keyfile = _optional_str(entry, "keyfile", index)
        if password is None and keyfile is None:
            raise ConfigError(f"accesspoint #{index} requires either `password` or `keyfile`")
        devices.append(DeviceConfig(password=password, keyfile=keyfile, **required))

    return ExporterConfig(
        global_config=GlobalConfig(port=port, timeout=float(timeout)),
        devices=tuple(devices),
    )


def load_config(path: str) -> ExporterConfig:
    """Load and validate the YAML config file.

    Args:
        path: Path to config YAML.

    Returns:
        Immutable ExporterConfig.

    Raises:
        ConfigError: File cannot be read or does not validate.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot open {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse {path}: {exc}") from exc
    return build_config(data)


def build_catalogue(namespace: str = NAMESPACE) -> Mapping[str, MetricSpec]:
    """Build the read-only catalogue of exported metric families.

    Names and labels follow unpoller where possible so dashboards can be
    shared between the two exporters.
    """
    specs = [
        # Device
        ("info", "info", "Device Information", DEVICE_INFO_LABELS, "gauge"),
        ("uptime", "uptime_seconds", "Device Uptime", DEVICE_LABELS, "gauge"),
        ("tx_bytes", "transmit_bytes_total", "Total Transmitted Bytes", DEVICE_LABELS, "counter"),
        ("rx_bytes", "receive_bytes_total", "Total Received Bytes", DEVICE_LABELS, "counter"),
        ("load_1", "load_average_1", "System Load Average 1 Minute", DEVICE_LABELS, "gauge"),
        ("load_5", "load_average_5", "System Load Average 5 Minutes", DEVICE_LABELS, "gauge"),
        ("load_15", "load_average_15", "System Load Average 15 Minutes", DEVICE_LABELS, "gauge"),
        ("mem_used", "memory_used_bytes", "System Memory Used", DEVICE_LABELS, "gauge"),
        ("mem_total", "memory_installed_bytes", "System Installed Memory", DEVICE_LABELS, "gauge"),
        ("mem_buffer", "memory_buffer_bytes", "System Memory Buffer", DEVICE_LABELS, "gauge"),
        ("cpu", "cpu_utilization_ratio", "System CPU % Utilized", DEVICE_LABELS, "gauge"),
        ("mem", "memory_utilization_ratio", "System Memory % Utilized", DEVICE_LABELS, "gauge"),
        # Radio
        ("radio_antenna_gain", "radio_current_antenna_gain", "Radio Current Antenna Gain", RADIO_LABELS, "gauge"),
        ("radio_max_txpower", "radio_max_transmit_power", "Radio Maximum Transmit Power", RADIO_LABELS, "gauge"),
        ("radio_min_txpower", "radio_min_transmit_power", "Radio Minimum Transmit Power", RADIO_LABELS, "gauge"),
        # Rogue AP (scan table)
        ("rogue_channel", "rogueap_channel", "RogueAP Channel", ROGUE_LABELS, "gauge"),
        ("rogue_frequency", "rogueap_frequency", "RogueAP Frequency", ROGUE_LABELS, "gauge"),
        ("rogue_noise", "rogueap_noise", "RogueAP Noise", ROGUE_LABELS, "gauge"),
        ("rogue_signal", "rogueap_signal", "RogueAP Signal", ROGUE_LABELS, "gauge"),
        # Virtual AP
        ("vap_rx_bytes", "vap_receive_bytes_total", "VAP Bytes Received", VAP_LABELS, "counter"),
        ("vap_rx_dropped", "vap_receive_dropped_total", "VAP Dropped Received", VAP_LABELS, "counter"),
        ("vap_rx_errors", "vap_receive_errors_total", "VAP Errors Received", VAP_LABELS, "counter"),
        ("vap_tx_bytes", "vap_transmit_bytes_total", "VAP Bytes Transmitted", VAP_LABELS, "counter"),
        ("vap_tx_dropped", "vap_transmit_dropped_total", "VAP Dropped Transmitted", VAP_LABELS, "counter"),
        ("vap_tx_errors", "vap_transmit_errors_total", "VAP Errors Transmitted", VAP_LABELS, "counter"),
        ("vap_tx_power", "vap_transmit_power", "VAP Transmit Power", VAP_LABELS, "gauge"),
        ("vap_tx_retries", "vap_transmit_retries_total", "VAP Retries Transmitted", VAP_LABELS, "counter"),
        ("vap_tx_success", "vap_transmit_success_total", "VAP Success Transmits", VAP_LABELS, "counter"),
        ("vap_tx_total", "vap_transmit_total", "VAP Transmit Total", VAP_LABELS, "counter"),
        # Station (client)
        ("sta_tx_bytes", "station_transmit_bytes_total", "Station Bytes Transmitted", STATION_LABELS, "counter"),
        ("sta_rx_bytes", "station_receive_bytes_total", "Station Bytes Received", STATION_LABELS, "counter"),
        ("sta_noise", "station_noise", "Station Noise", STATION_LABELS, "gauge"),
        ("sta_signal", "station_signal", "Station Signal", STATION_LABELS, "gauge"),
    ]
    return MappingProxyType(
        {
            key: MetricSpec(f"{namespace}_{suffix}", documentation, labels, kind)
            for key, suffix, documentation, labels, kind in specs
        }
    )


def collect_devices(
    devices: Sequence[DeviceConfig],
    timeout: float,
    fetcher: Callable[[DeviceConfig, float], DeviceStatusRecord] = fetch,
) -> List[DeviceStatusRecord]:
    """Poll every access point in config order.

    A failed poll never aborts the pass: the AP gets a placeholder record
    with ``up`` = 0 and the error is logged.

    Args:
        devices: Configured access points.
        timeout: Per-device poll timeout in seconds.
        fetcher: Function polling a single AP.

    Returns:
        One record per configured AP, in config order.
    """
    records: List[DeviceStatusRecord] = []
    for device in devices:
        try:
            record = fetcher(device, timeout)
        except FetchError as exc:
            LOG.warning("%s: %s", device.address, exc)
            records.append(DeviceStatusRecord.placeholder(device.name, device.address))
            continue
        records.append(record)
    return records


def flatten(records: Sequence[DeviceStatusRecord], catalogue: Mapping[str, MetricSpec]) -> List[Sample]:
    """Flatten status records into metric samples.

    Args:
        records: Records in config order.
        catalogue: Metric catalogue from build_catalogue().

    Returns:
        Samples in record order, nested tables in their own order.
    """
    samples: List[Sample] = []

    def emit(key: str, labels: Tuple[str, ...], value: float) -> None:
        samples.append(Sample(catalogue[key].name, labels, float(value)))

    for ap in records:
        device = (ap.name, ap.model)
        emit("info", (ap.ip, ap.mac, ap.model, ap.model_name, ap.name, ap.serial, ap.version), ap.up)
        emit("uptime", device, ap.uptime)

        # Interfaces that are down do not count towards the totals
        tx_total = sum(iface.tx_bytes for iface in ap.interfaces if iface.up)
        rx_total = sum(iface.rx_bytes for iface in ap.interfaces if iface.up)
        emit("tx_bytes", device, tx_total)
        emit("rx_bytes", device, rx_total)

        emit("load_1", device, ap.sys_stats.loadavg_1)
        emit("load_5", device, ap.sys_stats.loadavg_5)
        emit("load_15", device, ap.sys_stats.loadavg_15)
        emit("mem_used", device, ap.sys_stats.mem_used)
        emit("mem_total", device, ap.sys_stats.mem_total)
        emit("mem_buffer", device, ap.sys_stats.mem_buffer)
        emit("cpu", device, ap.system_stats.cpu)
        emit("mem", device, ap.system_stats.mem)

        for radio in ap.radios:
            radio_labels = (ap.name, radio.radio, radio.name)
            emit("radio_antenna_gain", radio_labels, radio.antenna_gain)
            emit("radio_max_txpower", radio_labels, radio.max_txpower)
            emit("radio_min_txpower", radio_labels, radio.min_txpower)

            for rogue in radio.scan_table:
                rogue_labels = (ap.name, radio.radio, rogue.bssid, rogue.essid, rogue.security)
                emit("rogue_channel", rogue_labels, rogue.channel)
                emit("rogue_frequency", rogue_labels, rogue.freq)
                emit("rogue_noise", rogue_labels, rogue.noise)
                emit("rogue_signal", rogue_labels, rogue.signal)

        for vap in ap.vaps:
            vap_labels = (ap.name, vap.name, vap.bssid, vap.radio, vap.radio_name, vap.essid, vap.usage)
            emit("vap_rx_bytes", vap_labels, vap.rx_bytes)
            emit("vap_rx_dropped", vap_labels, vap.rx_dropped)
            emit("vap_rx_errors", vap_labels, vap.rx_errors)
            emit("vap_tx_bytes", vap_labels, vap.tx_bytes)
            emit("vap_tx_dropped", vap_labels, vap.tx_dropped)
            emit("vap_tx_errors", vap_labels, vap.tx_errors)
            emit("vap_tx_power", vap_labels, vap.tx_power)
            emit("vap_tx_retries", vap_labels, vap.tx_retries)
            emit("vap_tx_success", vap_labels, vap.tx_success)
            emit("vap_tx_total", vap_labels, vap.tx_total)

            for station in vap.stations:
                station_labels = (ap.name, vap.name, station.hostname, station.mac)
                emit("sta_tx_bytes", station_labels, station.tx_bytes)
                emit("sta_rx_bytes", station_labels, station.rx_bytes)
                emit("sta_noise", station_labels, station.noise)
                emit("sta_signal", station_labels, station.signal)

    return samples


def _new_family(spec: MetricSpec) -> Metric:
    if spec.kind == "counter":
        return CounterMetricFamily(spec.name, spec.documentation, labels=list(spec.labels))
    return GaugeMetricFamily(spec.name, spec.documentation, labels=list(spec.labels))


def build_families(samples: Sequence[Sample], catalogue: Mapping[str, MetricSpec]) -> List[Metric]:
    """Group samples into fresh prometheus_client metric families."""
    families: Dict[str, Metric] = {spec.name: _new_family(spec) for spec in catalogue.values()}
    for sample in samples:
        families[sample.name].add_metric(list(sample.labels), sample.value)
    return list(families.values())


class ApCollector:
    """Custom collector polling every AP on each scrape."""

    def __init__(
        self,
        devices: Sequence[DeviceConfig],
        catalogue: Mapping[str, MetricSpec],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        fetcher: Callable[[DeviceConfig, float], DeviceStatusRecord] = fetch,
    ) -> None:
        self._devices = tuple(devices)
        self._catalogue = catalogue
        self._timeout = timeout
        self._fetcher = fetcher

    def describe(self) -> List[Metric]:
        # Avoids a full poll when the collector is registered.
        return build_families([], self._catalogue)

    def collect(self) -> Iterator[Metric]:
        start = time.monotonic()
        try:
            records = collect_devices(self._devices, self._timeout, self._fetcher)
        except CollectionError as exc:
            LOG.error("collect failed: %s", exc)
            return
        LOG.debug(
            "collected %d access points (%d up) in %.2fs",
            len(records),
            sum(1 for record in records if record.up),
            time.monotonic() - start,
        )
        yield from build_families(flatten(records, self._catalogue), self._catalogue)


def configure_logging(json_logs: bool = False, verbose: bool = False, debug: bool = False) -> None:
    """Configure root logging.

    Args:
        json_logs: Emit one JSON object per line instead of text.
        verbose: Debug logging for the exporter.
        debug: Debug logging for the exporter and the SSH library.
    """
    handler = logging.StreamHandler()
    if json_logs:
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    structlog.processors.JSONRenderer(),
                ],
                foreign_pre_chain=[
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.processors.TimeStamper(fmt="iso"),
                ],
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    LOG.setLevel(logging.DEBUG if verbose or debug else logging.INFO)

    if debug:
        asyncssh.set_log_level(logging.DEBUG)
        asyncssh.set_debug_level(2)
    else:
        asyncssh.set_log_level(logging.WARNING)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments.

    Returns:
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(description="UniFi Access Point Prometheus Exporter")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Configuration file")
    parser.add_argument("--version", action="store_true", help="Show unifi-ap-exporter version")
    parser.add_argument("--json", action="store_true", help="Enable JSON logging")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per access point poll timeout in seconds (overrides global.timeout)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entrypoint for the exporter."""
    args = parse_args(argv)
    configure_logging(json_logs=args.json, verbose=args.verbose, debug=args.debug)

    if args.version:
        LOG.info("unifi-ap-exporter %s", __version__)
        sys.exit(0)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        LOG.error("cannot read config file: %s", exc)
        sys.exit(0)

    settings = config.global_config
    if args.timeout is not None:
        if args.timeout <= 0:
            LOG.error("--timeout must be positive")
            sys.exit(0)
        settings = replace(settings, timeout=args.timeout)

    REGISTRY.register(ApCollector(config.devices, build_catalogue(), settings.timeout))
    start_http_server(settings.port)
    LOG.info("listening for requests on port %s", settings.port)

    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        LOG.info("shutting down")


if __name__ == "__main__":
    main()

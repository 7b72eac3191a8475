"""Incremental decoding of the powermetrics plist stream into Samples.

powermetrics writes one XML property-list document per sampling epoch,
back to back (separated by NUL bytes when writing to a file). Records are
delimited purely by the ``<?xml`` start marker and the ``</plist>`` end
marker, so a record that fails validation never disturbs the next one.
"""

from __future__ import annotations

import logging
import math
import plistlib
from collections.abc import Iterator
from datetime import datetime, timezone
from xml.parsers.expat import ExpatError

from socwatch.errors import MalformedRecord
from socwatch.models.enums import ThermalPressure
from socwatch.models.runtime import CoreUsage, ParseResult, Sample

logger = logging.getLogger("socwatch.parser")

START_MARKER = b"<?xml"
END_MARKER = b"</plist>"

DEFAULT_MAX_RECORD_BYTES = 1024 * 1024
DEFAULT_ANE_MAX_POWER_MW = 8000.0

# Energy over the sample (mJ); divided by elapsed time to give mW
_ENERGY_KEYS: dict[str, str] = {
    "cpu_energy": "cpu_power_mw",
    "gpu_energy": "gpu_power_mw",
    "ane_energy": "ane_power_mw",
}
# Already an average power (mW)
_PACKAGE_POWER_KEY = "combined_power"


class StreamParser:
    """Turns arbitrarily chunked bytes into a sequence of ParseResults.

    The buffer holds only the current incomplete record, so memory is bounded
    by ``max_record_bytes`` rather than by stream length. Output does not
    depend on how the stream is split into chunks.
    """

    def __init__(
        self,
        interval: float = 1.0,
        max_record_bytes: int = DEFAULT_MAX_RECORD_BYTES,
        ane_max_power_mw: float = DEFAULT_ANE_MAX_POWER_MW,
    ) -> None:
        self._interval = interval
        self._max_record_bytes = max_record_bytes
        self._ane_max_power_mw = ane_max_power_mw
        self._buffer = bytearray()
        self._skipping = False
        self._sequence = 0

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    @property
    def records_seen(self) -> int:
        return self._sequence

    def reset(self) -> None:
        """Discard any partially buffered record."""
        if self._buffer:
            logger.debug("Discarding %d buffered bytes", len(self._buffer))
        self._buffer.clear()
        self._skipping = False

    def feed(self, chunk: bytes) -> Iterator[ParseResult]:
        """Buffer a chunk and return a lazy iterator over the records it completes.

        The chunk is buffered immediately; records are cut and decoded as the
        iterator is consumed.
        """
        self._buffer.extend(chunk)
        return self._drain()

    def _drain(self) -> Iterator[ParseResult]:
        while True:
            if self._skipping:
                # Dropping the tail of an oversized record up to its end marker,
                # or up to the next record if the child started over
                start = self._buffer.find(START_MARKER)
                end = self._buffer.find(END_MARKER)
                if start >= 0 and (end < 0 or start < end):
                    del self._buffer[:start]
                elif end >= 0:
                    del self._buffer[: end + len(END_MARKER)]
                else:
                    self._keep_tail(len(END_MARKER) - 1)
                    return
                self._skipping = False

            start = self._buffer.find(START_MARKER)
            if start < 0:
                self._keep_tail(len(START_MARKER) - 1)
                return
            if start:
                del self._buffer[:start]

            end = self._buffer.find(END_MARKER, len(START_MARKER))
            restart = self._buffer.find(START_MARKER, len(START_MARKER))
            if restart >= 0 and (end < 0 or restart < end):
                # A new record began before this one ended
                yield self._dropped("truncated record", restart)
                del self._buffer[:restart]
                continue

            if end < 0:
                if len(self._buffer) > self._max_record_bytes:
                    yield self._dropped(
                        f"record exceeds {self._max_record_bytes} bytes", len(self._buffer)
                    )
                    del self._buffer[: len(START_MARKER)]
                    self._skipping = True
                    continue
                return

            stop = end + len(END_MARKER)
            if stop > self._max_record_bytes:
                yield self._dropped(f"record exceeds {self._max_record_bytes} bytes", stop)
                del self._buffer[:stop]
                continue

            record = bytes(self._buffer[:stop])
            del self._buffer[:stop]
            self._sequence += 1
            yield self._decode(record, self._sequence)

    def _keep_tail(self, size: int) -> None:
        # A marker may straddle two chunks; keep just enough to complete it.
        if len(self._buffer) > size:
            del self._buffer[: len(self._buffer) - size]

    def _dropped(self, reason: str, size: int) -> ParseResult:
        self._sequence += 1
        return ParseResult(error=MalformedRecord(reason, sequence=self._sequence, size=size))

    def _decode(self, record: bytes, sequence: int) -> ParseResult:
        try:
            data = plistlib.loads(record, fmt=plistlib.FMT_XML)
        except (plistlib.InvalidFileException, ExpatError, ValueError, AttributeError) as exc:
            # AttributeError: plistlib's <date> parser on an unparseable value
            return ParseResult(
                error=MalformedRecord(f"invalid plist: {exc}", sequence, len(record))
            )
        try:
            sample = decode_sample(
                data, sequence, self._interval, self._ane_max_power_mw
            )
        except MalformedRecord as exc:
            exc.sequence = sequence
            exc.size = len(record)
            return ParseResult(error=exc)
        return ParseResult(sample=sample)


def decode_sample(
    data: object,
    sequence: int,
    interval: float = 1.0,
    ane_max_power_mw: float = DEFAULT_ANE_MAX_POWER_MW,
) -> Sample:
    """Validate a decoded plist dict against the record schema and build a Sample."""
    if not isinstance(data, dict):
        raise MalformedRecord("record root is not a dict")

    timestamp = data.get("timestamp")
    if not isinstance(timestamp, datetime):
        raise MalformedRecord("missing or invalid 'timestamp'")
    if timestamp.tzinfo is None:
        # plistlib returns naive UTC datetimes
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    processor = _require_dict(data, "processor")
    gpu = _require_dict(data, "gpu")

    elapsed = interval
    elapsed_ns = data.get("elapsed_ns")
    if _is_number(elapsed_ns) and elapsed_ns > 0:
        elapsed = elapsed_ns / 1e9

    power: dict[str, float] = {}
    for key, field_name in _ENERGY_KEYS.items():
        power[field_name] = _require_power(processor, key) / elapsed
    power["package_power_mw"] = _require_power(processor, _PACKAGE_POWER_KEY)

    clusters = processor.get("clusters")
    if not isinstance(clusters, list):
        raise MalformedRecord("missing or invalid 'processor.clusters'")

    cluster_rows: list[tuple[str, float, int]] = []
    cores: list[CoreUsage] = []
    for index, cluster in enumerate(clusters):
        where = f"processor.clusters[{index}]"
        if not isinstance(cluster, dict):
            raise MalformedRecord(f"'{where}' is not a dict")
        name = cluster.get("name")
        if not isinstance(name, str):
            raise MalformedRecord(f"missing or invalid '{where}.name'")
        kind = name[:1].upper()
        cluster_rows.append(
            (
                name,
                idle_to_util(_require_number(cluster, "idle_ratio", where)),
                freq_to_mhz(_require_number(cluster, "freq_hz", where)),
            )
        )
        cpus = cluster.get("cpus", [])
        if not isinstance(cpus, list):
            raise MalformedRecord(f"invalid '{where}.cpus'")
        for cpu in cpus:
            if not isinstance(cpu, dict):
                raise MalformedRecord(f"invalid entry in '{where}.cpus'")
            core_id = cpu.get("cpu")
            if not isinstance(core_id, int) or isinstance(core_id, bool):
                raise MalformedRecord(f"missing or invalid '{where}.cpus.cpu'")
            cores.append(
                CoreUsage(
                    core_id=core_id,
                    cluster="E" if kind == "E" else "P",
                    util=idle_to_util(_require_number(cpu, "idle_ratio", where)),
                    freq_mhz=freq_to_mhz(_require_number(cpu, "freq_hz", where)),
                )
            )
    cores.sort(key=lambda c: c.core_id)

    e_util, e_freq = aggregate_cluster(cluster_rows, cores, "E")
    p_util, p_freq = aggregate_cluster(cluster_rows, cores, "P")

    ane_util = 0.0
    if ane_max_power_mw > 0:
        ane_util = min(100.0, power["ane_power_mw"] / ane_max_power_mw * 100.0)

    return Sample(
        timestamp=timestamp,
        sequence=sequence,
        cores=tuple(cores),
        e_cluster_util=e_util,
        p_cluster_util=p_util,
        e_cluster_freq_mhz=e_freq,
        p_cluster_freq_mhz=p_freq,
        gpu_util=idle_to_util(_require_number(gpu, "idle_ratio", "gpu")),
        gpu_freq_mhz=freq_to_mhz(_require_number(gpu, "freq_hz", "gpu")),
        ane_util=ane_util,
        thermal_pressure=ThermalPressure.parse(data.get("thermal_pressure")),
        **power,
    )


def idle_to_util(idle_ratio: float) -> float:
    """Convert an idle ratio (0-1, or 0-100 on some firmware) to percent busy."""
    if not math.isfinite(idle_ratio):
        return 0.0
    ratio = idle_ratio / 100.0 if idle_ratio > 1.0 else idle_ratio
    ratio = min(1.0, max(0.0, ratio))
    return (1.0 - ratio) * 100.0


def freq_to_mhz(freq_hz: float) -> int:
    """Normalise a frequency to MHz; values below 100 kHz are already MHz."""
    if not math.isfinite(freq_hz) or freq_hz <= 0:
        return 0
    if freq_hz >= 100_000:
        return round(freq_hz / 1_000_000)
    return round(freq_hz)


def aggregate_cluster(
    clusters: list[tuple[str, float, int]],
    cores: list[CoreUsage],
    prefix: str,
) -> tuple[float, int]:
    """Cluster-level utilization and frequency for the E or P core type.

    Utilization prefers the mean over the cluster's cores; frequency prefers
    the ``<prefix>-Cluster`` row, then the fastest matching cluster, then the
    fastest core.
    """
    members = [c for c in cores if c.cluster == prefix]
    rows = [row for row in clusters if row[0].upper().startswith(prefix)]
    primary = next((row for row in rows if row[0] == f"{prefix}-Cluster"), None)

    if primary is not None:
        row_util, row_freq = primary[1], primary[2]
    elif rows:
        row_util = sum(row[1] for row in rows) / len(rows)
        row_freq = max(row[2] for row in rows)
    else:
        row_util, row_freq = 0.0, 0

    util = sum(c.util for c in members) / len(members) if members else row_util
    freq = row_freq or max((c.freq_mhz for c in members), default=0)
    return util, freq


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_dict(data: dict, key: str) -> dict:
    value = data.get(key)
    if not isinstance(value, dict):
        raise MalformedRecord(f"missing or invalid '{key}'")
    return value


def _require_number(data: dict, key: str, where: str) -> float:
    value = data.get(key)
    if not _is_number(value):
        raise MalformedRecord(f"missing or non-numeric '{where}.{key}'")
    return float(value)


def _require_power(processor: dict, key: str) -> float:
    value = _require_number(processor, key, "processor")
    if not math.isfinite(value) or value < 0:
        raise MalformedRecord(f"negative or non-finite 'processor.{key}'")
    return value

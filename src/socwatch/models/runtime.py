"""Dataclass models for sampled telemetry and published snapshots."""

from __future__ import annotations

import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType

from socwatch.errors import MalformedRecord
from socwatch.models.enums import ThermalPressure


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CoreUsage:
    """Utilization of one physical CPU core."""

    core_id: int
    cluster: str  # "E" or "P"
    util: float
    freq_mhz: int = 0


@dataclass(frozen=True, slots=True)
class MemoryUsage:
    """RAM and swap occupancy in bytes."""

    ram_used: int = 0
    ram_total: int = 0
    swap_used: int = 0
    swap_total: int = 0

    @property
    def ram_used_pct(self) -> float:
        if self.ram_total <= 0:
            return 0.0
        return min(100.0, max(0.0, self.ram_used / self.ram_total * 100.0))

    @property
    def swap_used_pct(self) -> float:
        if self.swap_total <= 0:
            return 0.0
        return min(100.0, max(0.0, self.swap_used / self.swap_total * 100.0))


@dataclass(frozen=True, slots=True)
class IoRates:
    """Network and disk throughput in MB/s."""

    net_in: float = 0.0
    net_out: float = 0.0
    disk_read: float = 0.0
    disk_write: float = 0.0


@dataclass(frozen=True, slots=True)
class Sample:
    """One fully parsed observation epoch."""

    timestamp: datetime
    sequence: int
    cores: tuple[CoreUsage, ...] = ()
    e_cluster_util: float = 0.0
    p_cluster_util: float = 0.0
    e_cluster_freq_mhz: int = 0
    p_cluster_freq_mhz: int = 0
    gpu_util: float = 0.0
    gpu_freq_mhz: int = 0
    ane_util: float = 0.0
    cpu_power_mw: float = 0.0
    gpu_power_mw: float = 0.0
    ane_power_mw: float = 0.0
    package_power_mw: float = 0.0
    thermal_pressure: ThermalPressure = ThermalPressure.UNKNOWN
    memory: MemoryUsage = field(default_factory=MemoryUsage)
    io: IoRates = field(default_factory=IoRates)

    @property
    def epoch(self) -> float:
        """Timestamp as POSIX seconds."""
        return self.timestamp.timestamp()

    def cluster_cores(self, cluster: str) -> tuple[CoreUsage, ...]:
        return tuple(c for c in self.cores if c.cluster == cluster)


@dataclass(frozen=True, slots=True)
class ParseResult:
    """Outcome of decoding one delimited record: a Sample or a MalformedRecord."""

    sample: Sample | None = None
    error: MalformedRecord | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.sample is not None


@dataclass(frozen=True, slots=True)
class ChannelStats:
    """Current value, rolling average and peak of one channel."""

    key: str
    current: float = 0.0
    average: float = 0.0
    peak: float = 0.0


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable, versioned aggregate of every channel plus the latest Sample."""

    generation: int = 0
    channels: Mapping[str, ChannelStats] = field(
        default_factory=lambda: MappingProxyType({})
    )
    sample: Sample | None = None
    samples_ingested: int = 0
    # CPU+GPU power (mW) of the most recent samples, oldest first
    power_history: tuple[float, ...] = ()
    created_at: datetime = field(default_factory=_now)

    def channel(self, key: str) -> ChannelStats:
        """Stats for a channel; unknown channels read as all zeros."""
        stats = self.channels.get(key)
        return stats if stats is not None else ChannelStats(key=key)

    def current(self, key: str) -> float:
        return self.channel(key).current

    def average(self, key: str) -> float:
        return self.channel(key).average

    def peak(self, key: str) -> float:
        return self.channel(key).peak


@dataclass(slots=True)
class SupervisorState:
    """Lifecycle bookkeeping for the supervised child. Private to the supervisor."""

    process: subprocess.Popen | None = None
    output_path: Path | None = None
    read_offset: int = 0
    samples_since_spawn: int = 0
    last_exit_status: int | None = None
    restart_attempts: int = 0
    spawn_count: int = 0

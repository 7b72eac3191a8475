"""Per-channel rolling averages and peaks, folded into immutable Snapshots."""

from __future__ import annotations

import logging
import math
from collections import deque
from types import MappingProxyType

from socwatch.models.runtime import ChannelStats, Sample, Snapshot

logger = logging.getLogger("socwatch.aggregator")

POWER_HISTORY_LEN = 120


def extract_channels(sample: Sample) -> dict[str, float]:
    """Map a Sample onto named scalar channels."""
    values: dict[str, float] = {
        "cpu_power": sample.cpu_power_mw,
        "gpu_power": sample.gpu_power_mw,
        "ane_power": sample.ane_power_mw,
        "package_power": sample.package_power_mw,
        "e_cluster_util": sample.e_cluster_util,
        "p_cluster_util": sample.p_cluster_util,
        "gpu_util": sample.gpu_util,
        "ane_util": sample.ane_util,
        "ram_used_pct": sample.memory.ram_used_pct,
        "swap_used_pct": sample.memory.swap_used_pct,
        "net_in": sample.io.net_in,
        "net_out": sample.io.net_out,
        "disk_read": sample.io.disk_read,
        "disk_write": sample.io.disk_write,
    }
    for core in sample.cores:
        values[f"core_{core.core_id}_util"] = core.util
    return values


class RollingWindow:
    """(timestamp, value) history covering exactly the last ``span`` seconds."""

    __slots__ = ("span", "_entries")

    def __init__(self, span: float) -> None:
        self.span = span
        self._entries: deque[tuple[float, float]] = deque()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, timestamp: float, value: float) -> bool:
        """Add an entry; entries not newer than the last one are rejected."""
        if self._entries and timestamp <= self._entries[-1][0]:
            return False
        self._entries.append((timestamp, value))
        self.evict(timestamp)
        return True

    def evict(self, now: float) -> None:
        cutoff = now - self.span
        while self._entries and self._entries[0][0] < cutoff:
            self._entries.popleft()

    def average(self) -> float:
        if not self._entries:
            return 0.0
        return math.fsum(v for _, v in self._entries) / len(self._entries)

    def entries(self) -> list[tuple[float, float]]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class PeakTracker:
    """Maximum value seen since start. Never decreases until reset."""

    __slots__ = ("value",)

    def __init__(self) -> None:
        self.value = 0.0

    def update(self, value: float) -> float:
        if value > self.value:
            self.value = value
        return self.value

    def reset(self) -> None:
        self.value = 0.0


class RollingAggregator:
    """Folds Samples into per-channel statistics and hands out Snapshots.

    Window length is bounded by ``avg_window / interval`` entries because
    eviction is tied to sample age, not to how long the monitor has run.
    """

    def __init__(self, avg_window: float, history_len: int = POWER_HISTORY_LEN) -> None:
        if not math.isfinite(avg_window) or avg_window <= 0:
            raise ValueError(f"avg_window must be a finite value > 0, got {avg_window}")
        self._avg_window = avg_window
        self._windows: dict[str, RollingWindow] = {}
        self._peaks: dict[str, PeakTracker] = {}
        self._current: dict[str, float] = {}
        self._power_history: deque[float] = deque(maxlen=history_len)
        self._last_epoch: float | None = None
        self._latest: Sample | None = None
        self._ingested = 0
        self._dirty = False
        self._snapshot = Snapshot()

    @property
    def avg_window(self) -> float:
        return self._avg_window

    @property
    def samples_ingested(self) -> int:
        return self._ingested

    def window(self, key: str) -> RollingWindow | None:
        return self._windows.get(key)

    def ingest(self, sample: Sample) -> bool:
        """Fold one Sample in. Returns False for stale or duplicate timestamps."""
        now = sample.epoch
        if self._last_epoch is not None and now <= self._last_epoch:
            logger.debug(
                "Skipping sample %d: timestamp %s not newer than last",
                sample.sequence, sample.timestamp.isoformat(),
            )
            return False

        for key, value in extract_channels(sample).items():
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = RollingWindow(self._avg_window)
                self._peaks[key] = PeakTracker()
            window.append(now, value)
            self._peaks[key].update(value)
            self._current[key] = value

        for window in self._windows.values():
            window.evict(now)
        self._power_history.append(sample.cpu_power_mw + sample.gpu_power_mw)

        self._last_epoch = now
        self._latest = sample
        self._ingested += 1
        self._dirty = True
        return True

    def snapshot(self) -> Snapshot:
        """Current aggregate; the generation only advances after new data."""
        if not self._dirty:
            return self._snapshot

        channels = {
            key: ChannelStats(
                key=key,
                current=self._current.get(key, 0.0),
                average=window.average(),
                peak=self._peaks[key].value,
            )
            for key, window in self._windows.items()
        }
        self._snapshot = Snapshot(
            generation=self._snapshot.generation + 1,
            channels=MappingProxyType(channels),
            sample=self._latest,
            samples_ingested=self._ingested,
            power_history=tuple(self._power_history),
        )
        self._dirty = False
        return self._snapshot

    def reset(self) -> None:
        """Start a new monitoring session: clear windows, peaks and power history.

        Generations keep increasing so readers never see an older number.
        """
        self._windows.clear()
        self._peaks.clear()
        self._current.clear()
        self._power_history.clear()
        self._last_epoch = None
        self._latest = None
        self._ingested = 0
        self._dirty = True

"""Host memory and I/O counters via psutil."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import psutil

from socwatch.models.runtime import IoRates, MemoryUsage

logger = logging.getLogger("socwatch.host")

MIN_SAMPLE_INTERVAL = 0.5
_MB = 1024 * 1024


def read_memory() -> MemoryUsage:
    """Current RAM and swap occupancy. Returns zeros if psutil cannot read them."""
    try:
        vm = psutil.virtual_memory()
        swap = psutil.swap_memory()
    except (OSError, RuntimeError):
        logger.debug("Memory counters unavailable", exc_info=True)
        return MemoryUsage()
    # available covers inactive + free pages, matching what the OS reports as in use
    used = max(0, vm.total - vm.available)
    return MemoryUsage(
        ram_used=used,
        ram_total=vm.total,
        swap_used=swap.used,
        swap_total=swap.total,
    )


def _read_net() -> tuple[int, int] | None:
    try:
        counters = psutil.net_io_counters(pernic=True)
    except (OSError, RuntimeError):
        return None
    total_in = total_out = 0
    for nic, c in counters.items():
        if nic.startswith("lo"):
            continue
        total_in += c.bytes_recv
        total_out += c.bytes_sent
    return total_in, total_out


def _read_disk() -> tuple[int, int] | None:
    try:
        counters = psutil.disk_io_counters()
    except (OSError, RuntimeError):
        return None
    if counters is None:
        return None
    return counters.read_bytes, counters.write_bytes


def rate_from_delta(current: int, previous: int, delta_secs: float) -> float:
    """MB/s between two cumulative byte counters; 0 on wrap or reset."""
    if current <= previous or delta_secs <= 0:
        return 0.0
    return (current - previous) / delta_secs / _MB


class HostSampler:
    """Derives network and disk throughput from cumulative psutil counters.

    Calls closer together than ``min_interval`` return the previous rates;
    the very first call returns zero rates and primes the counters.
    """

    def __init__(
        self,
        min_interval: float = MIN_SAMPLE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = min_interval
        self._clock = clock
        self._last_at: float | None = None
        self._last_net: tuple[int, int] | None = None
        self._last_disk: tuple[int, int] | None = None
        self._current = IoRates()

    def memory(self) -> MemoryUsage:
        return read_memory()

    def io_rates(self) -> IoRates:
        now = self._clock()
        if self._last_at is not None and now - self._last_at < self._min_interval:
            return self._current

        net = _read_net()
        disk = _read_disk()

        if self._last_at is None:
            self._last_at = now
            self._last_net = net
            self._last_disk = disk
            self._current = IoRates()
            return self._current

        delta = max(now - self._last_at, 0.001)
        net_in, net_out = self._current.net_in, self._current.net_out
        disk_read, disk_write = self._current.disk_read, self._current.disk_write

        if net is not None:
            if self._last_net is not None:
                net_in = rate_from_delta(net[0], self._last_net[0], delta)
                net_out = rate_from_delta(net[1], self._last_net[1], delta)
            self._last_net = net

        if disk is not None:
            if self._last_disk is not None:
                disk_read = rate_from_delta(disk[0], self._last_disk[0], delta)
                disk_write = rate_from_delta(disk[1], self._last_disk[1], delta)
            self._last_disk = disk

        self._last_at = now
        self._current = IoRates(
            net_in=net_in, net_out=net_out, disk_read=disk_read, disk_write=disk_write
        )
        return self._current

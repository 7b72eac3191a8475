"""Rich renderables for the live dashboard."""

from __future__ import annotations

import math
from collections.abc import Iterable

from rich.bar import Bar
from rich.console import Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from socwatch.config import DisplayConfig
from socwatch.core.soc import SocInfo
from socwatch.models.enums import PipelineState
from socwatch.models.runtime import Sample, Snapshot

# --color 0-8, in the classic asitop order
PALETTE = (
    "default",
    "red",
    "green",
    "yellow",
    "blue",
    "magenta",
    "cyan",
    "white",
    "bright_magenta",
)

_GB = 1024 ** 3

SPARK_CHARS = " ▁▂▃▄▅▆▇█"
SPARK_WIDTH = 60
# Floor for the sparkline scale so an idle machine does not draw full bars
_SPARK_MIN_MW = 100.0


def color_for(index: int) -> str:
    if 0 <= index < len(PALETTE):
        return PALETTE[index]
    return "green"


def _gauge_table() -> Table:
    table = Table.grid(padding=(0, 1), expand=True)
    table.add_column(width=22, no_wrap=True)
    table.add_column(ratio=1)
    table.add_column(width=5, justify="right")
    return table


def _add_gauge(table: Table, label: str, percent: float, color: str) -> None:
    pct = min(100.0, max(0.0, percent))
    table.add_row(label, Bar(100, 0, pct, color=color), f"{pct:.0f}%")


def _watts(mw: float) -> str:
    return f"{mw / 1000.0:.2f}W"


def sparkline(values: Iterable[float], width: int, scale_max: float) -> str:
    """One row of block characters, newest value on the right.

    Missing history on the left is drawn as blanks.
    """
    data = list(values)[-width:]
    upper = scale_max if scale_max > 0 else 1.0
    cells = [" "] * (width - len(data))
    for v in data:
        ratio = max(0.0, min(1.0, v / upper)) if math.isfinite(v) else 0.0
        # Non-zero readings always show at least the lowest block
        level = max(1, math.ceil(ratio * 8)) if ratio > 0 else 0
        cells.append(SPARK_CHARS[level])
    return "".join(cells)


def processor_panel(snapshot: Snapshot, sample: Sample, display: DisplayConfig, color: str) -> Panel:
    table = _gauge_table()
    _add_gauge(
        table,
        f"E-CPU {sample.e_cluster_freq_mhz} MHz",
        snapshot.current("e_cluster_util"),
        color,
    )
    if display.show_cores:
        for core in sample.cluster_cores("E"):
            _add_gauge(table, f"  core {core.core_id}", core.util, color)
    _add_gauge(
        table,
        f"P-CPU {sample.p_cluster_freq_mhz} MHz",
        snapshot.current("p_cluster_util"),
        color,
    )
    if display.show_cores:
        for core in sample.cluster_cores("P"):
            _add_gauge(table, f"  core {core.core_id}", core.util, color)
    _add_gauge(table, f"GPU {sample.gpu_freq_mhz} MHz", snapshot.current("gpu_util"), color)
    _add_gauge(
        table,
        f"ANE {_watts(sample.ane_power_mw)}",
        snapshot.current("ane_util"),
        color,
    )
    return Panel(table, title="Processor Utilization", border_style=color)


def memory_panel(snapshot: Snapshot, sample: Sample, color: str) -> Panel:
    mem = sample.memory
    table = _gauge_table()
    _add_gauge(
        table,
        f"RAM {mem.ram_used / _GB:.1f}/{mem.ram_total / _GB:.1f}GB",
        snapshot.current("ram_used_pct"),
        color,
    )
    if mem.swap_total > 0:
        _add_gauge(
            table,
            f"swap {mem.swap_used / _GB:.1f}/{mem.swap_total / _GB:.1f}GB",
            snapshot.current("swap_used_pct"),
            color,
        )
    else:
        table.add_row("swap", Text("inactive", style="dim"), "")

    io = Table.grid(padding=(0, 2))
    io.add_row(
        f"net in {snapshot.current('net_in'):.2f} MB/s",
        f"net out {snapshot.current('net_out'):.2f} MB/s",
    )
    io.add_row(
        f"disk read {snapshot.current('disk_read'):.2f} MB/s",
        f"disk write {snapshot.current('disk_write'):.2f} MB/s",
    )
    return Panel(Group(table, io), title="Memory and I/O", border_style=color)


def power_panel(snapshot: Snapshot, soc: SocInfo, color: str) -> Panel:
    table = Table(expand=True, box=None, header_style="bold")
    table.add_column("Rail")
    table.add_column("Now", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Peak", justify="right")
    table.add_column("of cap", justify="right")

    caps = {
        "cpu_power": soc.cpu_max_power * 1000.0,
        "gpu_power": soc.gpu_max_power * 1000.0,
        "ane_power": soc.ane_max_power_mw,
    }
    for key, label in (
        ("cpu_power", "CPU"),
        ("gpu_power", "GPU"),
        ("ane_power", "ANE"),
        ("package_power", "Package"),
    ):
        stats = snapshot.channel(key)
        cap = caps.get(key, 0.0)
        share = f"{stats.current / cap * 100:.0f}%" if cap > 0 else ""
        table.add_row(
            label,
            _watts(stats.current),
            _watts(stats.average),
            _watts(stats.peak),
            share,
        )
    history = snapshot.power_history
    scale = max(snapshot.peak("package_power"), max(history, default=0.0), _SPARK_MIN_MW)
    trend = Text.assemble(
        ("CPU+GPU ", "bold"),
        (sparkline(history, SPARK_WIDTH, scale), color),
        (f" scale {_watts(scale)}", "dim"),
    )
    return Panel(Group(table, trend), title="Power", border_style=color)


def build_dashboard(
    snapshot: Snapshot,
    soc: SocInfo,
    display: DisplayConfig,
    state: PipelineState = PipelineState.RUNNING,
) -> RenderableType:
    """Full dashboard for one snapshot. Only reads; never touches pipeline state."""
    color = color_for(display.color)
    title = f"socwatch · {soc.name}"
    sample = snapshot.sample
    if sample is None:
        waiting = Text(f"Waiting for first sample ({state.value})...", style="dim")
        return Panel(waiting, title=title, border_style=color)

    thermal = sample.thermal_pressure
    status = Text(
        f"{soc.e_core_count}E + {soc.p_core_count}P cores · {soc.gpu_core_count} GPU cores"
        f" · thermal {thermal.value} · gen {snapshot.generation} · {state.value}"
        "   (q to quit)",
        style="red" if thermal.throttled else "dim",
    )
    return Panel(
        Group(
            processor_panel(snapshot, sample, display, color),
            memory_panel(snapshot, sample, color),
            power_panel(snapshot, soc, color),
            status,
        ),
        title=title,
        border_style=color,
    )

"""Tests for dashboard rendering."""

from rich.console import Console

from records import build_record_data
from socwatch.cli.dashboard import PALETTE, build_dashboard, color_for, power_panel, sparkline
from socwatch.config import DisplayConfig
from socwatch.core.aggregator import RollingAggregator
from socwatch.core.parser import decode_sample
from socwatch.core.soc import SocInfo
from socwatch.models.enums import PipelineState
from socwatch.models.runtime import Snapshot

SOC = SocInfo(name="Apple M2 Pro", e_core_count=4, p_core_count=8, gpu_core_count=19,
              cpu_max_power=40.0, gpu_max_power=40.0)


def _render(renderable) -> str:
    console = Console(record=True, width=120, color_system=None)
    console.print(renderable)
    return console.export_text()


def _snapshot(**kwargs) -> Snapshot:
    agg = RollingAggregator(avg_window=30.0)
    agg.ingest(decode_sample(build_record_data(offset=0, cpu_mw=1000.0, **kwargs), 1))
    agg.ingest(decode_sample(build_record_data(offset=1, cpu_mw=3000.0, **kwargs), 2))
    return agg.snapshot()


class TestColor:
    def test_palette_index(self):
        assert color_for(1) == "red"
        assert len(PALETTE) == 9

    def test_out_of_range_falls_back(self):
        assert color_for(42) == "green"


class TestBuildDashboard:
    def test_waiting_for_first_sample(self):
        text = _render(build_dashboard(Snapshot(), SOC, DisplayConfig(), PipelineState.STARTING))
        assert "Waiting for first sample (starting)" in text
        assert "Apple M2 Pro" in text

    def test_panels(self):
        text = _render(build_dashboard(_snapshot(), SOC, DisplayConfig()))
        assert "Processor Utilization" in text
        assert "Memory and I/O" in text
        assert "Power" in text
        assert "E-CPU 972 MHz" in text
        assert "GPU 1398 MHz" in text
        assert "q to quit" in text

    def test_power_now_avg_peak(self):
        text = _render(build_dashboard(_snapshot(), SOC, DisplayConfig()))
        # CPU: now 3W, average of 1W and 3W, peak 3W, 3W of a 40W cap
        assert "3.00W" in text
        assert "2.00W" in text
        assert "8%" in text

    def test_per_core_rows(self):
        shown = _render(build_dashboard(_snapshot(), SOC, DisplayConfig(show_cores=True)))
        hidden = _render(build_dashboard(_snapshot(), SOC, DisplayConfig(show_cores=False)))
        assert "core 3" in shown
        assert "core 3" not in hidden

    def test_thermal_state_shown(self):
        text = _render(build_dashboard(_snapshot(thermal="Heavy"), SOC, DisplayConfig()))
        assert "thermal Heavy" in text

    def test_swap_inactive(self):
        text = _render(build_dashboard(_snapshot(), SOC, DisplayConfig()))
        assert "inactive" in text


class TestSparkline:
    def test_scaled_to_max(self):
        assert sparkline([0.0, 50.0, 100.0], 3, 100.0) == " ▄█"

    def test_left_padded_to_width(self):
        assert sparkline([100.0], 4, 100.0) == "   █"

    def test_keeps_newest_values(self):
        assert sparkline([100.0, 0.0, 0.0], 2, 100.0) == "  "

    def test_small_values_stay_visible_and_large_are_clamped(self):
        assert sparkline([0.1, 500.0], 2, 100.0) == "▁█"


class TestPowerTrend:
    def test_history_drawn_under_power_table(self):
        text = _render(power_panel(_snapshot(), SOC, "green"))
        assert "CPU+GPU" in text
        # The newest CPU+GPU reading (3.5W) sets the scale and fills its cell
        assert "█" in text

    def test_empty_history(self):
        text = _render(power_panel(Snapshot(), SOC, "green"))
        assert "CPU+GPU" in text
        assert "scale 0.10W" in text

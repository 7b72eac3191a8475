"""socwatch data models."""

from socwatch.models.enums import PipelineState, ThermalPressure
from socwatch.models.runtime import (
    ChannelStats,
    CoreUsage,
    IoRates,
    MemoryUsage,
    ParseResult,
    Sample,
    Snapshot,
    SupervisorState,
)

__all__ = [
    "PipelineState",
    "ThermalPressure",
    "CoreUsage",
    "MemoryUsage",
    "IoRates",
    "Sample",
    "ParseResult",
    "ChannelStats",
    "Snapshot",
    "SupervisorState",
]

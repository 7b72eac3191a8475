"""Enumerations for socwatch runtime models."""

from enum import Enum


class PipelineState(str, Enum):
    """Lifecycle state of the sampling pipeline."""

    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    DRAINING = "draining"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.STOPPED, PipelineState.FAILED)


class ThermalPressure(str, Enum):
    """Thermal pressure level as reported by powermetrics."""

    NOMINAL = "Nominal"
    MODERATE = "Moderate"
    HEAVY = "Heavy"
    TRAPPING = "Trapping"
    SLEEPING = "Sleeping"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: object) -> "ThermalPressure":
        if isinstance(raw, str):
            for member in cls:
                if member.value.lower() == raw.strip().lower():
                    return member
        return cls.UNKNOWN

    @property
    def throttled(self) -> bool:
        return self not in (ThermalPressure.NOMINAL, ThermalPressure.UNKNOWN)

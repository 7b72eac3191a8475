"""Layered configuration: ~/.socwatch/config.toml -> SOCWATCH_* env vars -> defaults."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

try:
    import tomllib  # 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from socwatch.errors import ConfigError

DEFAULT_COMMAND: tuple[str, ...] = (
    "sudo",
    "nice",
    "-n",
    "10",
    "powermetrics",
    "--samplers",
    "cpu_power,gpu_power,thermal",
    "-o",
    "{output}",
    "-f",
    "plist",
    "-i",
    "{interval_ms}",
)


@dataclass(frozen=True, slots=True)
class SamplingConfig:
    """Sampling cadence and rolling statistics settings."""

    interval: float = 1.0
    avg: float = 30.0
    max_count: int = 0


@dataclass(frozen=True, slots=True)
class SupervisorConfig:
    """Child process supervision settings."""

    command: tuple[str, ...] = DEFAULT_COMMAND
    output_prefix: str = "socwatch_powermetrics"
    poll_timeout: float = 0.1
    terminate_timeout: float = 3.0
    spawn_grace: float = 0.2
    read_chunk_bytes: int = 64 * 1024
    max_record_bytes: int = 1024 * 1024
    max_failures: int = 5
    backoff_base: float = 0.5
    backoff_cap: float = 8.0


@dataclass(frozen=True, slots=True)
class DisplayConfig:
    """Dashboard settings. Cosmetic, ignored by the pipeline."""

    color: int = 2
    show_cores: bool = False
    refresh: float = 0.1


@dataclass(frozen=True, slots=True)
class SocwatchConfig:
    """Top-level configuration container."""

    config_dir: Path = field(default_factory=lambda: Path.home() / ".socwatch")
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.toml"

    @classmethod
    def load(cls, config_dir: Path | None = None) -> SocwatchConfig:
        """Load config with layering: TOML file -> env vars -> defaults."""
        directory = Path(config_dir) if config_dir else Path.home() / ".socwatch"
        toml_path = directory / "config.toml"

        toml_data: dict = {}
        if toml_path.is_file():
            with open(toml_path, "rb") as f:
                try:
                    toml_data = tomllib.load(f)
                except tomllib.TOMLDecodeError as exc:
                    raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

        sampling_data = toml_data.get("sampling", {})
        supervisor_data = toml_data.get("supervisor", {})
        display_data = toml_data.get("display", {})

        # Use literal defaults (slots=True prevents class-level attribute access)
        _sampling_defaults = SamplingConfig()
        _sup_defaults = SupervisorConfig()
        _display_defaults = DisplayConfig()

        try:
            sampling = SamplingConfig(
                interval=float(
                    os.environ.get(
                        "SOCWATCH_INTERVAL",
                        sampling_data.get("interval", _sampling_defaults.interval),
                    )
                ),
                avg=float(
                    os.environ.get(
                        "SOCWATCH_AVG",
                        sampling_data.get("avg", _sampling_defaults.avg),
                    )
                ),
                max_count=int(
                    os.environ.get(
                        "SOCWATCH_MAX_COUNT",
                        sampling_data.get("max_count", _sampling_defaults.max_count),
                    )
                ),
            )

            command = supervisor_data.get("command", _sup_defaults.command)
            supervisor = SupervisorConfig(
                command=tuple(str(part) for part in command),
                output_prefix=os.environ.get(
                    "SOCWATCH_OUTPUT_PREFIX",
                    supervisor_data.get("output_prefix", _sup_defaults.output_prefix),
                ),
                poll_timeout=float(
                    supervisor_data.get("poll_timeout", _sup_defaults.poll_timeout)
                ),
                terminate_timeout=float(
                    os.environ.get(
                        "SOCWATCH_TERMINATE_TIMEOUT",
                        supervisor_data.get(
                            "terminate_timeout", _sup_defaults.terminate_timeout
                        ),
                    )
                ),
                spawn_grace=float(
                    supervisor_data.get("spawn_grace", _sup_defaults.spawn_grace)
                ),
                read_chunk_bytes=int(
                    supervisor_data.get(
                        "read_chunk_bytes", _sup_defaults.read_chunk_bytes
                    )
                ),
                max_record_bytes=int(
                    supervisor_data.get(
                        "max_record_bytes", _sup_defaults.max_record_bytes
                    )
                ),
                max_failures=int(
                    os.environ.get(
                        "SOCWATCH_MAX_FAILURES",
                        supervisor_data.get("max_failures", _sup_defaults.max_failures),
                    )
                ),
                backoff_base=float(
                    supervisor_data.get("backoff_base", _sup_defaults.backoff_base)
                ),
                backoff_cap=float(
                    supervisor_data.get("backoff_cap", _sup_defaults.backoff_cap)
                ),
            )

            display = DisplayConfig(
                color=int(
                    os.environ.get(
                        "SOCWATCH_COLOR",
                        display_data.get("color", _display_defaults.color),
                    )
                ),
                show_cores=_as_bool(
                    os.environ.get(
                        "SOCWATCH_SHOW_CORES",
                        display_data.get("show_cores", _display_defaults.show_cores),
                    )
                ),
                refresh=float(display_data.get("refresh", _display_defaults.refresh)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid configuration value: {exc}") from exc

        return cls(
            config_dir=directory,
            sampling=sampling,
            supervisor=supervisor,
            display=display,
        )

    def with_overrides(
        self,
        *,
        interval: float | None = None,
        avg: float | None = None,
        max_count: int | None = None,
        color: int | None = None,
        show_cores: bool | None = None,
    ) -> SocwatchConfig:
        """Return a copy with command-line values applied on top."""
        sampling = replace(
            self.sampling,
            interval=self.sampling.interval if interval is None else interval,
            avg=self.sampling.avg if avg is None else avg,
            max_count=self.sampling.max_count if max_count is None else max_count,
        )
        display = replace(
            self.display,
            color=self.display.color if color is None else color,
            show_cores=self.display.show_cores if show_cores is None else show_cores,
        )
        return replace(self, sampling=sampling, display=display)

    def validate(self) -> SocwatchConfig:
        """Raise ConfigError on values the pipeline cannot run with."""
        s = self.sampling
        for name in ("interval", "avg"):
            if not math.isfinite(getattr(s, name)):
                raise ConfigError(f"{name} must be finite, got {getattr(s, name)}")
        if s.interval <= 0:
            raise ConfigError(f"interval must be > 0, got {s.interval}")
        if s.avg < s.interval:
            raise ConfigError(
                f"avg window ({s.avg}s) must be >= interval ({s.interval}s)"
            )
        if s.max_count < 0:
            raise ConfigError(f"max_count must be >= 0, got {s.max_count}")

        sup = self.supervisor
        if not sup.command:
            raise ConfigError("supervisor command must not be empty")
        for name in ("poll_timeout", "terminate_timeout", "backoff_base", "backoff_cap"):
            value = getattr(sup, name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigError(f"{name} must be a finite value > 0, got {value}")
        if not math.isfinite(sup.spawn_grace) or sup.spawn_grace < 0:
            raise ConfigError(f"spawn_grace must be >= 0, got {sup.spawn_grace}")
        if sup.read_chunk_bytes <= 0 or sup.max_record_bytes <= 0:
            raise ConfigError("read_chunk_bytes and max_record_bytes must be > 0")
        if sup.max_failures < 0:
            raise ConfigError(f"max_failures must be >= 0, got {sup.max_failures}")

        if not 0 <= self.display.color <= 8:
            raise ConfigError(f"color must be in 0-8, got {self.display.color}")
        if not math.isfinite(self.display.refresh) or self.display.refresh <= 0:
            raise ConfigError(f"refresh must be > 0, got {self.display.refresh}")
        return self


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)

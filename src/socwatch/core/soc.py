"""SoC identification via sysctl and system_profiler."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass

logger = logging.getLogger("socwatch.soc")

_SYSCTL = "/usr/sbin/sysctl"
_SYSTEM_PROFILER = "/usr/sbin/system_profiler"

# (cpu_max_w, gpu_max_w) by chip name suffix
_POWER_CAPS: dict[str, tuple[float, float]] = {
    "Pro": (40.0, 40.0),
    "Max": (90.0, 90.0),
    "Ultra": (140.0, 140.0),
}
_DEFAULT_CAPS = (20.0, 20.0)
ANE_MAX_POWER_W = 8.0


@dataclass(frozen=True, slots=True)
class SocInfo:
    """Static description of the chip, used for percent-of-cap display."""

    name: str = "Apple Silicon"
    e_core_count: int = 0
    p_core_count: int = 0
    gpu_core_count: int = 0
    cpu_max_power: float = _DEFAULT_CAPS[0]
    gpu_max_power: float = _DEFAULT_CAPS[1]
    ane_max_power: float = ANE_MAX_POWER_W

    @property
    def ane_max_power_mw(self) -> float:
        return self.ane_max_power * 1000.0

    @classmethod
    def detect(cls) -> SocInfo:
        name = (_read_sysctl("machdep.cpu.brand_string") or "Apple Silicon").strip()
        cpu_cap, gpu_cap = lookup_caps(name)
        return cls(
            name=name,
            e_core_count=_to_int(_read_sysctl("hw.perflevel1.logicalcpu")),
            p_core_count=_to_int(_read_sysctl("hw.perflevel0.logicalcpu")),
            gpu_core_count=_read_gpu_core_count(),
            cpu_max_power=cpu_cap,
            gpu_max_power=gpu_cap,
        )


def lookup_caps(name: str) -> tuple[float, float]:
    for suffix, caps in _POWER_CAPS.items():
        if name.endswith(suffix):
            return caps
    return _DEFAULT_CAPS


def _to_int(value: str | None) -> int:
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def _run(args: list[str]) -> str | None:
    if shutil.which(args[0]) is None:
        return None
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError):
        logger.debug("Failed to run %s", args[0], exc_info=True)
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def _read_sysctl(key: str) -> str | None:
    out = _run([_SYSCTL, "-n", key])
    if out is None:
        return None
    value = out.strip()
    return value or None


def _read_gpu_core_count() -> int:
    out = _run([_SYSTEM_PROFILER, "-detailLevel", "basic", "SPDisplaysDataType"])
    if out is None:
        return 0
    for line in out.splitlines():
        line = line.strip()
        if line.startswith("Total Number of Cores:"):
            return _to_int(line.split(":", 1)[1].strip())
    return 0

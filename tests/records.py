"""Synthetic powermetrics plist records for tests."""

import plistlib
from datetime import datetime, timedelta

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0)


def build_record_data(
    offset: float = 0.0,
    cpu_mw: float = 1000.0,
    gpu_mw: float = 500.0,
    ane_mw: float = 0.0,
    package_mw: float = 1500.0,
    elapsed_ns: int | None = 1_000_000_000,
    thermal: str = "Nominal",
) -> dict:
    """A powermetrics-shaped dict. With a 1 s elapsed time, energy mJ equals power mW."""
    data = {
        "timestamp": BASE_TIME + timedelta(seconds=offset),
        "thermal_pressure": thermal,
        "hw_model": "Mac14,2",
        "processor": {
            "clusters": [
                {
                    "name": "E-Cluster",
                    "freq_hz": 972_000_000.0,
                    "idle_ratio": 0.5,
                    "cpus": [
                        {"cpu": 0, "freq_hz": 972_000_000.0, "idle_ratio": 0.75},
                        {"cpu": 1, "freq_hz": 600_000_000.0, "idle_ratio": 0.25},
                    ],
                },
                {
                    "name": "P-Cluster",
                    "freq_hz": 3_204_000_000.0,
                    "idle_ratio": 0.75,
                    "cpus": [
                        {"cpu": 2, "freq_hz": 3_204_000_000.0, "idle_ratio": 0.5},
                        {"cpu": 3, "freq_hz": 3_204_000_000.0, "idle_ratio": 1.0},
                    ],
                },
            ],
            "cpu_energy": cpu_mw,
            "gpu_energy": gpu_mw,
            "ane_energy": ane_mw,
            "combined_power": package_mw,
        },
        "gpu": {"freq_hz": 1_398_000_000.0, "idle_ratio": 0.75},
    }
    if elapsed_ns is not None:
        data["elapsed_ns"] = elapsed_ns
    return data


def encode_record(data: dict) -> bytes:
    """Serialize like powermetrics does when writing to a file: XML plist + NUL."""
    return plistlib.dumps(data, fmt=plistlib.FMT_XML) + b"\x00"


def build_record(drop: tuple[str, ...] = (), **kwargs) -> bytes:
    """Encoded record; ``drop`` removes dotted keys such as ``processor.cpu_energy``."""
    data = build_record_data(**kwargs)
    for dotted in drop:
        *parents, leaf = dotted.split(".")
        target = data
        for part in parents:
            target = target[part]
        del target[leaf]
    return encode_record(data)

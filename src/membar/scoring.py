"""
Composite pressure score.

    overall = 0.4 * memory% + 0.3 * swap% + 0.3 * pressure level score

Swap is bucketed rather than linear: the amount swapped is a qualitative
pressure signal, not a bounded percentage.
"""

from __future__ import annotations

import re
from enum import Enum

from membar.models import (
    GIB,
    MIB,
    DetailedMemorySnapshot,
    MemorySnapshot,
    PressureLevel,
    PressureScore,
)

MEMORY_WEIGHT = 0.4
SWAP_WEIGHT = 0.3
PRESSURE_WEIGHT = 0.3

# Used when a display string carries no total
ASSUMED_TOTAL_GB = 16.0

PRESSURE_LEVEL_SCORES = {
    PressureLevel.NORMAL: 0.0,
    PressureLevel.WARNING: 65.0,
    PressureLevel.CRITICAL: 90.0,
}

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


class PressureBucket(Enum):
    """Discrete score bands for rendering."""

    LOW = "low"
    MODERATE = "moderate"
    ELEVATED = "elevated"
    HIGH = "high"

    @classmethod
    def for_score(cls, overall: float) -> PressureBucket:
        """Bucket for an overall score."""
        if overall < 30:
            return cls.LOW
        if overall < 60:
            return cls.MODERATE
        if overall < 75:
            return cls.ELEVATED
        return cls.HIGH


def memory_percent_from_text(used_display: str) -> float:
    """
    Memory usage from a display string such as "4.5 GB of 16.0 GB".

    A lone number is taken as used GB against ASSUMED_TOTAL_GB.
    """
    numbers = [float(token) for token in _NUMBER_RE.findall(used_display)]
    if not numbers:
        return 0.0
    used = numbers[0]
    total = numbers[1] if len(numbers) >= 2 else ASSUMED_TOTAL_GB
    if total <= 0:
        return 0.0
    return min(100.0, used / total * 100.0)


def memory_percent(used_gb: float, total_gb: float) -> float:
    """Memory usage percent from numeric fields, clamped to [0, 100]."""
    if total_gb <= 0:
        return 0.0
    return min(100.0, max(0.0, used_gb / total_gb * 100.0))


def swap_percent_from_bytes(swap_bytes: int) -> float:
    """Swap bucket: 0, 25 below 1 GB, 50 below 4 GB, 80 above."""
    if swap_bytes <= 0:
        return 0.0
    if swap_bytes < GIB:
        return 25.0
    if swap_bytes < 4 * GIB:
        return 50.0
    return 80.0


def swap_percent_from_text(swap_display: str) -> float:
    """Swap bucket from a display string such as "512 MB" or "2.1 GB"."""
    match = _NUMBER_RE.search(swap_display)
    if not match:
        return 0.0
    unit = GIB if "GB" in swap_display.upper() else MIB
    return swap_percent_from_bytes(int(float(match.group()) * unit))


def pressure_level_score(level: PressureLevel | str) -> float:
    """Score for a pressure level: Normal 0, Warning 65, Critical 90."""
    if isinstance(level, str):
        level = PressureLevel.parse(level)
    return PRESSURE_LEVEL_SCORES.get(level, 0.0)


def composite(memory_usage: float, swap_usage: float, level_score: float) -> float:
    """Weighted overall score."""
    return (
        MEMORY_WEIGHT * memory_usage
        + SWAP_WEIGHT * swap_usage
        + PRESSURE_WEIGHT * level_score
    )


def score(snapshot: MemorySnapshot) -> PressureScore:
    """
    Score a snapshot.

    Detailed snapshots are scored from their numeric fields; summaries only
    carry display strings, which are parsed back into numbers.
    """
    if isinstance(snapshot, DetailedMemorySnapshot):
        memory_usage = memory_percent(snapshot.used_gb, snapshot.total_gb)
        swap_usage = swap_percent_from_bytes(snapshot.swap_used_bytes)
    else:
        memory_usage = memory_percent_from_text(snapshot.used_display)
        swap_usage = swap_percent_from_text(snapshot.swap_display)

    return PressureScore(
        overall=composite(memory_usage, swap_usage, pressure_level_score(snapshot.pressure)),
        memory_usage_percent=memory_usage,
        swap_usage_percent=swap_usage,
    )

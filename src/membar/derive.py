"""
Metric derivation from raw counters.

    appMemory  = active + inactive + speculative - purgeable - external
    usedTotal  = appMemory + wired + compressed
    activeMem  = active + speculative
    usageRatio = usedTotal / physicalMemory

Page counts can be sampled mid-update under heavy pressure, so appMemory may
come out negative. Negative quantities are floored at 0 and reported as an
ArithmeticAnomaly; they never reach a display string.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from membar.errors import CounterUnavailable
from membar.models import (
    GIB,
    MIB,
    DetailedMemorySnapshot,
    MemorySnapshot,
    PressureLevel,
    RawCounters,
)

log = logging.getLogger(__name__)

CRITICAL_USAGE_RATIO = 0.90
WARNING_USAGE_RATIO = 0.80

# Raw counts this large usually mean the kernel is mid-update
_SUSPICIOUS_PAGE_COUNT = 2**31


@dataclass(slots=True, frozen=True)
class ArithmeticAnomaly:
    """A derived quantity that went negative and was floored at 0."""

    quantity: str
    raw_value: float


@dataclass(slots=True, frozen=True)
class DerivedMetrics:
    """Byte-level metrics for one sample, already clamped."""

    physical_bytes: int
    app_bytes: int
    active_bytes: int
    wired_bytes: int
    compressed_bytes: int
    used_bytes: int
    swap_bytes: int
    pressure: PressureLevel
    anomalies: tuple[ArithmeticAnomaly, ...] = ()

    @property
    def usage_ratio(self) -> float:
        """Fraction of physical memory in use."""
        return self.used_bytes / self.physical_bytes


def _floor(quantity: str, value: float, anomalies: list[ArithmeticAnomaly]) -> float:
    if value >= 0:
        return value
    anomalies.append(ArithmeticAnomaly(quantity=quantity, raw_value=value))
    log.warning("%s computed as %.0f, floored to 0", quantity, value)
    return 0


def kernel_pressure(level: int | None) -> PressureLevel | None:
    """Map a kernel pressure level, or None when it should not be trusted."""
    if level == 1:
        return PressureLevel.WARNING
    if level in (2, 3, 4):
        return PressureLevel.CRITICAL
    return None


def ratio_pressure(usage_ratio: float) -> PressureLevel:
    """Pressure computed from memory usage when the kernel gives none."""
    if usage_ratio > CRITICAL_USAGE_RATIO:
        return PressureLevel.CRITICAL
    if usage_ratio > WARNING_USAGE_RATIO:
        return PressureLevel.WARNING
    return PressureLevel.NORMAL


def derive_metrics(raw: RawCounters) -> DerivedMetrics:
    """Apply the fixed formulas to one raw sample."""
    if raw.physical_memory <= 0:
        raise CounterUnavailable("physical memory size reported as 0")

    anomalies: list[ArithmeticAnomaly] = []
    b = raw.bytes_of

    app = _floor(
        "app memory",
        b(raw.active) + b(raw.inactive) + b(raw.speculative) - b(raw.purgeable) - b(raw.external),
        anomalies,
    )
    active = _floor("active memory", b(raw.active) + b(raw.speculative), anomalies)
    wired = _floor("wired memory", b(raw.wired), anomalies)
    compressed = _floor("compressed memory", b(raw.compressed), anomalies)
    used = app + wired + compressed

    if active > app:
        log.debug(
            "active memory (%.2f GB) exceeds app memory (%.2f GB)",
            active / GIB,
            app / GIB,
        )
    if raw.internal > _SUSPICIOUS_PAGE_COUNT or raw.external > _SUSPICIOUS_PAGE_COUNT:
        log.warning(
            "high memory pressure detected - internal: %d, external: %d",
            raw.internal,
            raw.external,
        )

    pressure = kernel_pressure(raw.kernel_pressure_level)
    if pressure is None:
        pressure = ratio_pressure(used / raw.physical_memory)

    return DerivedMetrics(
        physical_bytes=raw.physical_memory,
        app_bytes=int(app),
        active_bytes=int(active),
        wired_bytes=int(wired),
        compressed_bytes=int(compressed),
        used_bytes=int(used),
        swap_bytes=raw.swap_used,
        pressure=pressure,
        anomalies=tuple(anomalies),
    )


def format_swap(swap_bytes: int, *, detailed: bool = False) -> str:
    """Swap usage for display: MB below 1 GB, GB above."""
    if swap_bytes <= 0:
        return "0.00 MB" if detailed else "0 MB"
    if swap_bytes < GIB:
        mb = swap_bytes / MIB
        return f"{mb:.2f} MB" if detailed else f"{mb:.0f} MB"
    gb = swap_bytes / GIB
    return f"{gb:.2f} GB" if detailed else f"{gb:.1f} GB"


def format_compressed(compressed_gb: float) -> str:
    """Compressed memory for display: MB below 1 GB, GB above."""
    if compressed_gb < 1.0:
        return f"{compressed_gb * 1024:.0f} MB"
    return f"{compressed_gb:.2f} GB"


def derive_summary(raw: RawCounters) -> MemorySnapshot:
    """Summary snapshot: "<used> GB of <total> GB"."""
    metrics = derive_metrics(raw)
    used_gb = metrics.used_bytes / GIB
    total_gb = metrics.physical_bytes / GIB
    log.debug(
        "app %.2f GB, wired %.2f GB, compressed %.2f GB",
        metrics.app_bytes / GIB,
        metrics.wired_bytes / GIB,
        metrics.compressed_bytes / GIB,
    )
    return MemorySnapshot(
        pressure=metrics.pressure,
        used_display=f"{used_gb:.1f} GB of {total_gb:.1f} GB",
        swap_display=format_swap(metrics.swap_bytes),
    )


def derive_detailed(raw: RawCounters) -> DetailedMemorySnapshot:
    """Detailed snapshot with the App + Wired + Compressed breakdown."""
    metrics = derive_metrics(raw)
    app_gb = metrics.app_bytes / GIB
    wired_gb = metrics.wired_bytes / GIB
    compressed_gb = metrics.compressed_bytes / GIB
    used_gb = metrics.used_bytes / GIB
    used_display = (
        f"{used_gb:.2f} GB "
        f"(App:{app_gb:.2f} + W:{wired_gb:.2f} + C:{format_compressed(compressed_gb)})"
    )
    return DetailedMemorySnapshot(
        pressure=metrics.pressure,
        used_display=used_display,
        swap_display=format_swap(metrics.swap_bytes, detailed=True),
        total_gb=metrics.physical_bytes / GIB,
        active_gb=metrics.active_bytes / GIB,
        wired_gb=wired_gb,
        compressed_gb=compressed_gb,
        used_gb=used_gb,
        app_gb=app_gb,
        swap_used_bytes=metrics.swap_bytes,
    )

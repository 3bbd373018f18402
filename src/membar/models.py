"""Data models for membar."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from membar.errors import MemBarError

GIB = 1024**3
MIB = 1024**2


class PressureLevel(Enum):
    """Categorical memory pressure."""

    NORMAL = "Normal"
    WARNING = "Warning"
    CRITICAL = "Critical"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str) -> PressureLevel:
        """Map a display string to a level, case-insensitively."""
        for level in cls:
            if level.value.lower() == value.strip().lower():
                return level
        return cls.UNKNOWN


@dataclass(slots=True, frozen=True)
class RawCounters:
    """One sample of raw virtual-memory counters. Page counts, not bytes."""

    physical_memory: int  # Bytes
    page_size: int  # Bytes
    active: int
    inactive: int
    speculative: int
    wired: int
    compressed: int
    purgeable: int
    external: int
    internal: int
    swap_used: int  # Bytes
    kernel_pressure_level: int | None = None

    def bytes_of(self, pages: int) -> int:
        """Convert a page count to bytes."""
        return pages * self.page_size


@dataclass(slots=True, frozen=True)
class MemorySnapshot:
    """Summary reply: pressure level plus two display strings."""

    pressure: PressureLevel
    used_display: str
    swap_display: str

    def to_dict(self) -> dict[str, Any]:
        """Wire representation."""
        return {
            "pressure": self.pressure.value,
            "used_display": self.used_display,
            "swap_display": self.swap_display,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemorySnapshot:
        """Build a snapshot from its wire representation."""
        return cls(
            pressure=PressureLevel.parse(str(data["pressure"])),
            used_display=str(data["used_display"]),
            swap_display=str(data["swap_display"]),
        )


@dataclass(slots=True, frozen=True)
class DetailedMemorySnapshot(MemorySnapshot):
    """Detailed reply with the byte-accurate breakdown in GB."""

    total_gb: float = 0.0
    active_gb: float = 0.0
    wired_gb: float = 0.0
    compressed_gb: float = 0.0
    # Carried so consumers never have to re-parse the display strings
    used_gb: float = 0.0
    app_gb: float = 0.0
    swap_used_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Wire representation, including the breakdown fields."""
        return {
            "pressure": self.pressure.value,
            "used_display": self.used_display,
            "swap_display": self.swap_display,
            "total_gb": self.total_gb,
            "active_gb": self.active_gb,
            "wired_gb": self.wired_gb,
            "compressed_gb": self.compressed_gb,
            "used_gb": self.used_gb,
            "app_gb": self.app_gb,
            "swap_used_bytes": self.swap_used_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetailedMemorySnapshot:
        """Build a detailed snapshot; the extension fields are optional."""
        return cls(
            pressure=PressureLevel.parse(str(data["pressure"])),
            used_display=str(data["used_display"]),
            swap_display=str(data["swap_display"]),
            total_gb=float(data["total_gb"]),
            active_gb=float(data["active_gb"]),
            wired_gb=float(data["wired_gb"]),
            compressed_gb=float(data["compressed_gb"]),
            used_gb=float(data.get("used_gb", 0.0)),
            app_gb=float(data.get("app_gb", 0.0)),
            swap_used_bytes=int(data.get("swap_used_bytes", 0)),
        )


Snapshot = MemorySnapshot | DetailedMemorySnapshot


@dataclass(slots=True, frozen=True)
class PressureScore:
    """Composite pressure score, every component in [0, 100]."""

    overall: float
    memory_usage_percent: float
    swap_usage_percent: float


@dataclass(slots=True, frozen=True)
class FetchResult:
    """
    Outcome of one channel query, failure included.

    Exactly one of snapshot and error is set.
    """

    snapshot: Snapshot | None
    error: MemBarError | None
    fetched_at: datetime

    @property
    def ok(self) -> bool:
        """Whether the fetch produced a snapshot."""
        return self.error is None

"""
Raw virtual-memory counter readers.

Each platform gets a CounterSource; read_raw() applies the read order and the
fallback rules on top of whichever source is in use:

- physical memory size is required (0 counts as a failure)
- the kernel pressure level is optional, any failure means "not exposed"
- page counters are required
- swap usage is optional and reads as 0 bytes when unavailable
"""

from __future__ import annotations

import logging
import mmap
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import psutil

from membar.errors import CounterUnavailable
from membar.models import RawCounters

log = logging.getLogger(__name__)

PROC_MEMINFO = Path("/proc/meminfo")

_SUBPROCESS_TIMEOUT = 3.0
_SWAP_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
_PAGE_SIZE_RE = re.compile(r"page size of (\d+) bytes")
_SWAP_USED_RE = re.compile(r"used\s*=\s*([\d.]+)\s*([KMGT]?)", re.IGNORECASE)

# vm_stat labels for each page category
VM_STAT_KEYS = {
    "active": "Pages active",
    "inactive": "Pages inactive",
    "speculative": "Pages speculative",
    "wired": "Pages wired down",
    "compressed": "Pages occupied by compressor",
    "purgeable": "Pages purgeable",
    "external": "File-backed pages",
    "internal": "Anonymous pages",
}


@dataclass(slots=True, frozen=True)
class PageCounters:
    """System-wide page counts by category."""

    page_size: int
    active: int = 0
    inactive: int = 0
    speculative: int = 0
    wired: int = 0
    compressed: int = 0
    purgeable: int = 0
    external: int = 0
    internal: int = 0


class CounterSource(Protocol):
    """Platform capability interface for the four raw reads."""

    def read_physical_memory(self) -> int: ...

    def read_page_counters(self) -> PageCounters: ...

    def read_pressure_level(self) -> int | None: ...

    def read_swap_usage(self) -> int: ...


# Parsers


def parse_vm_stat(text: str) -> PageCounters:
    """Parse `vm_stat` output into page counters."""
    match = _PAGE_SIZE_RE.search(text)
    if not match:
        raise CounterUnavailable("vm_stat output has no page size header")

    pages: dict[str, int] = {}
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        value = value.strip().rstrip(".")
        try:
            pages[key.strip().strip('"')] = int(value)
        except ValueError:
            continue

    if VM_STAT_KEYS["active"] not in pages:
        raise CounterUnavailable("vm_stat output has no page counts")

    return PageCounters(
        page_size=int(match.group(1)),
        **{field: pages.get(label, 0) for field, label in VM_STAT_KEYS.items()},
    )


def parse_swapusage(text: str) -> int:
    """
    Parse `sysctl vm.swapusage` into used bytes.

    Example input: "total = 2048.00M  used = 1024.25M  free = 1023.75M  (encrypted)"
    """
    match = _SWAP_USED_RE.search(text)
    if not match:
        raise ValueError(f"unrecognised vm.swapusage output: {text!r}")
    amount = float(match.group(1))
    return int(amount * _SWAP_UNITS[match.group(2).upper()])


def parse_meminfo(contents: str) -> dict[str, int]:
    """Parse /proc/meminfo into a dict of values in bytes."""
    values: dict[str, int] = {}
    for line in contents.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        key = parts[0].rstrip(":")
        try:
            value_kb = int(parts[1])
        except ValueError:
            continue
        values[key] = value_kb * 1024
    return values


def meminfo_to_page_counters(values: dict[str, int], page_size: int) -> PageCounters:
    """
    Map /proc/meminfo categories onto the page categories.

    File-backed pages count as external, anonymous pages as internal. Kernel
    allocations that cannot be reclaimed stand in for wired memory and zswap
    for the compressor.
    """
    if "Active" not in values or "Inactive" not in values:
        raise CounterUnavailable("Active or Inactive missing in /proc/meminfo")

    def pages(*keys: str) -> int:
        return sum(values.get(key, 0) for key in keys) // page_size

    return PageCounters(
        page_size=page_size,
        active=pages("Active"),
        inactive=pages("Inactive"),
        wired=pages("Unevictable", "KernelStack", "PageTables", "SUnreclaim"),
        compressed=pages("Zswap"),
        external=pages("Active(file)", "Inactive(file)"),
        internal=pages("Active(anon)", "Inactive(anon)"),
    )


# Sources


def _run(args: list[str]) -> str:
    try:
        out = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=_SUBPROCESS_TIMEOUT,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise CounterUnavailable(f"{' '.join(args)} failed: {exc}") from exc
    return out.stdout


def _sysctl(name: str) -> str:
    return _run(["sysctl", "-n", name]).strip()


class DarwinCounterSource:
    """macOS: sysctl and vm_stat, with psutil as a fallback."""

    def read_physical_memory(self) -> int:
        """Total RAM from hw.memsize."""
        try:
            return int(_sysctl("hw.memsize"))
        except (CounterUnavailable, ValueError) as exc:
            log.debug("hw.memsize unavailable (%s), using psutil", exc)
            return psutil.virtual_memory().total

    def read_pressure_level(self) -> int | None:
        """Kernel memory pressure level from kern.memorystatus_vm_pressure_level."""
        return int(_sysctl("kern.memorystatus_vm_pressure_level"))

    def read_page_counters(self) -> PageCounters:
        """Page counters from vm_stat."""
        return parse_vm_stat(_run(["vm_stat"]))

    def read_swap_usage(self) -> int:
        """Swap in use from vm.swapusage."""
        try:
            return parse_swapusage(_sysctl("vm.swapusage"))
        except (CounterUnavailable, ValueError) as exc:
            log.debug("vm.swapusage unavailable (%s), using psutil", exc)
            return psutil.swap_memory().used


class LinuxCounterSource:
    """Linux: psutil for totals, /proc/meminfo for page categories."""

    def __init__(self, meminfo_path: Path = PROC_MEMINFO) -> None:
        self._meminfo_path = meminfo_path

    def read_physical_memory(self) -> int:
        """Total RAM."""
        return psutil.virtual_memory().total

    def read_pressure_level(self) -> int | None:
        return None

    def read_page_counters(self) -> PageCounters:
        """Page counters from /proc/meminfo."""
        try:
            contents = self._meminfo_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CounterUnavailable(f"cannot read {self._meminfo_path}: {exc}") from exc
        return meminfo_to_page_counters(parse_meminfo(contents), mmap.PAGESIZE)

    def read_swap_usage(self) -> int:
        return psutil.swap_memory().used


class PsutilCounterSource:
    """Any other platform: whatever psutil.virtual_memory() exposes."""

    def read_physical_memory(self) -> int:
        return psutil.virtual_memory().total

    def read_pressure_level(self) -> int | None:
        return None

    def read_page_counters(self) -> PageCounters:
        """Page counters approximated from psutil.virtual_memory()."""
        vm = psutil.virtual_memory()
        page_size = mmap.PAGESIZE
        # Platforms without an active count report plain "used" memory
        active = getattr(vm, "active", vm.used)
        return PageCounters(
            page_size=page_size,
            active=active // page_size,
            inactive=getattr(vm, "inactive", 0) // page_size,
            wired=getattr(vm, "wired", 0) // page_size,
        )

    def read_swap_usage(self) -> int:
        return psutil.swap_memory().used


def default_counter_source() -> CounterSource:
    """Pick the counter source for the running platform."""
    if sys.platform == "darwin":
        return DarwinCounterSource()
    if sys.platform.startswith("linux"):
        return LinuxCounterSource()
    return PsutilCounterSource()


_READ_ERRORS = (CounterUnavailable, OSError, ValueError, psutil.Error)


def read_raw(source: CounterSource) -> RawCounters:
    """
    Take one sample from a counter source.

    Raises:
        CounterUnavailable: physical memory size or page counters unreadable.
    """
    try:
        physical = source.read_physical_memory()
    except _READ_ERRORS as exc:
        raise CounterUnavailable(f"physical memory size unreadable: {exc}") from exc
    if physical <= 0:
        raise CounterUnavailable("physical memory size reported as 0")

    try:
        level = source.read_pressure_level()
    except _READ_ERRORS as exc:
        log.debug("kernel pressure level unavailable: %s", exc)
        level = None

    try:
        pages = source.read_page_counters()
    except _READ_ERRORS as exc:
        raise CounterUnavailable(f"page counters unreadable: {exc}") from exc

    try:
        swap_used = source.read_swap_usage()
    except _READ_ERRORS as exc:
        log.warning("swap usage unavailable, reporting 0: %s", exc)
        swap_used = 0

    return RawCounters(
        physical_memory=physical,
        page_size=pages.page_size,
        active=pages.active,
        inactive=pages.inactive,
        speculative=pages.speculative,
        wired=pages.wired,
        compressed=pages.compressed,
        purgeable=pages.purgeable,
        external=pages.external,
        internal=pages.internal,
        swap_used=max(0, swap_used),
        kernel_pressure_level=level,
    )

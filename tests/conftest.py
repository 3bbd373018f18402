"""Shared fixtures for membar tests."""

import shutil
import tempfile
import threading
from pathlib import Path

import pytest

from membar import protocol
from membar.counters import PageCounters
from membar.errors import CounterUnavailable
from membar.models import GIB, RawCounters

PAGE_SIZE = 16384


def gb_pages(gb: float) -> int:
    """Number of pages holding `gb` gigabytes."""
    return int(gb * GIB) // PAGE_SIZE


class FakeCounterSource:
    """CounterSource with fixed readings; names in `fail` raise."""

    def __init__(
        self,
        physical: int = 16 * GIB,
        pages: PageCounters | None = None,
        level: int | None = None,
        swap: int = 0,
        fail: tuple[str, ...] = (),
    ) -> None:
        self.physical = physical
        self.pages = pages or PageCounters(
            page_size=PAGE_SIZE,
            active=gb_pages(2),
            inactive=gb_pages(1),
            wired=gb_pages(1),
            compressed=gb_pages(0.5),
        )
        self.level = level
        self.swap = swap
        self.fail = fail
        self.calls: list[str] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise CounterUnavailable(f"{name} failed")

    def read_physical_memory(self) -> int:
        self._check("physical")
        return self.physical

    def read_pressure_level(self) -> int | None:
        self._check("pressure")
        return self.level

    def read_page_counters(self) -> PageCounters:
        self._check("pages")
        return self.pages

    def read_swap_usage(self) -> int:
        self._check("swap")
        return self.swap


class BlockingCounterSource(FakeCounterSource):
    """Blocks page counter reads until `release` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def read_page_counters(self) -> PageCounters:
        self.entered.set()
        self.release.wait(timeout=10.0)
        return super().read_page_counters()


@pytest.fixture
def fake_source():
    return FakeCounterSource()


@pytest.fixture
def make_raw():
    """Factory for RawCounters given in GB; defaults to the 4.5 GB of 16 GB example."""

    def _make(
        physical_gb: float = 16,
        active: float = 2,
        inactive: float = 1,
        speculative: float = 0,
        wired: float = 1,
        compressed: float = 0.5,
        purgeable: float = 0,
        external: float = 0,
        internal: float = 0,
        swap_used: int = 0,
        level: int | None = None,
    ) -> RawCounters:
        return RawCounters(
            physical_memory=int(physical_gb * GIB),
            page_size=PAGE_SIZE,
            active=gb_pages(active),
            inactive=gb_pages(inactive),
            speculative=gb_pages(speculative),
            wired=gb_pages(wired),
            compressed=gb_pages(compressed),
            purgeable=gb_pages(purgeable),
            external=gb_pages(external),
            internal=gb_pages(internal),
            swap_used=swap_used,
            kernel_pressure_level=level,
        )

    return _make


@pytest.fixture
def source_factory():
    return FakeCounterSource


@pytest.fixture
def blocking_source():
    source = BlockingCounterSource()
    yield source
    source.release.set()


@pytest.fixture
def socket_path():
    """Short socket path; AF_UNIX paths are limited to about 100 bytes."""
    directory = tempfile.mkdtemp(prefix="membar-")
    yield Path(directory) / "h.sock"
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def reply_handler():
    """
    Factory for unix-server handlers that accept the greeting and answer
    every request with make_reply(request).
    """

    def build(make_reply):
        async def handle(reader, writer):
            greeting = await protocol.read_message(reader)
            if greeting is not None:
                await protocol.write_message(writer, protocol.hello_reply(greeting))
                while True:
                    message = await protocol.read_message(reader)
                    if message is None:
                        break
                    await protocol.write_message(writer, make_reply(message))
            writer.close()

        return handle

    return build

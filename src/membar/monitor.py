"""Background memory statistics poller for membar."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import datetime
from queue import Queue

from membar.channel import ChannelState, StatisticsChannel
from membar.errors import MemBarError, RequestTimeout
from membar.models import FetchResult
from membar.protocol import RequestKind

log = logging.getLogger(__name__)


class MemoryMonitor:
    """
    Memory monitor that queries the statistics service over a channel.

    Runs in a separate daemon thread with its own event loop, which owns the
    channel, and pushes one FetchResult per tick to a thread-safe Queue.
    Failures are queued as results, never raised. With auto refresh off the
    monitor only queries on start and when refresh_now() is called.
    """

    def __init__(
        self,
        update_queue: Queue[FetchResult],
        channel_factory: Callable[[], StatisticsChannel],
        poll_rate: float = 5.0,
        focused_rate: float = 1.0,
        detailed: bool = False,
        request_timeout: float | None = None,
        auto_refresh: bool = True,
    ) -> None:
        """
        Initialize the MemoryMonitor.

        Args:
            update_queue: Thread-safe queue to push results to.
            channel_factory: Builds the channel; called on the monitor thread.
            poll_rate: Seconds between queries. Default 5.0s.
            focused_rate: Seconds between queries while focused. Default 1.0s.
            detailed: Ask for detailed snapshots instead of summaries.
            request_timeout: Give up on a reply after this many seconds.
            auto_refresh: Query every tick; when False only on request.
        """
        self._queue = update_queue
        self._channel_factory = channel_factory
        self._poll_rate = max(0.1, poll_rate)
        self._focused_rate = max(0.1, focused_rate)
        self._focused = False
        self._detailed = detailed
        self._request_timeout = request_timeout
        self._auto_refresh = auto_refresh
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds
        self.refresh_now()

    @property
    def focused(self) -> bool:
        """Whether the presentation layer has focus."""
        return self._focused

    @focused.setter
    def focused(self, value: bool) -> None:
        """Set focus; switches between the focused and normal rates."""
        if value == self._focused:
            return
        self._focused = value
        log.info("focused=%s, polling every %.1fs", value, self.effective_rate)
        self.refresh_now()

    @property
    def effective_rate(self) -> float:
        """Seconds until the next scheduled query."""
        return self._focused_rate if self._focused else self._poll_rate

    @property
    def detailed(self) -> bool:
        """Whether detailed snapshots are requested."""
        return self._detailed

    @detailed.setter
    def detailed(self, value: bool) -> None:
        """Switch between summary and detailed queries."""
        self._detailed = value
        self.refresh_now()

    @property
    def auto_refresh(self) -> bool:
        """Whether queries run on every tick."""
        return self._auto_refresh

    @auto_refresh.setter
    def auto_refresh(self, value: bool) -> None:
        """Pause or resume periodic queries; resuming queries immediately."""
        if value == self._auto_refresh:
            return
        self._auto_refresh = value
        log.info("auto refresh %s", "on" if value else "off")
        if value:
            self.refresh_now()

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="MemoryMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        self.refresh_now()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def refresh_now(self) -> None:
        """Cut the current wait short and query immediately."""
        loop, wake = self._loop, self._wake
        if loop is None or wake is None:
            return
        try:
            loop.call_soon_threadsafe(wake.set)
        except RuntimeError:
            pass  # Loop already closed

    def _run(self) -> None:
        asyncio.run(self._poll_loop())

    async def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        self._wake = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        channel = self._open_channel()
        try:
            due = True
            while not self._stop_event.is_set():
                if due:
                    if channel.state is ChannelState.INVALIDATED:
                        log.warning("channel invalidated, opening a new one")
                        channel = self._open_channel()
                    try:
                        self._queue.put(await self.fetch(channel))
                    except Exception:
                        # Keep polling; one bad tick must not end the thread
                        log.exception("unexpected error while polling")
                woken = await self._sleep(self.effective_rate)
                due = woken or self._auto_refresh
        finally:
            self._loop = None
            await channel.close()

    def _open_channel(self) -> StatisticsChannel:
        channel = self._channel_factory()
        channel.open()
        return channel

    async def _sleep(self, seconds: float) -> bool:
        """Wait `seconds` or until woken; returns True when woken."""
        wake = self._wake
        if wake is None:
            raise RuntimeError("poll loop is not running")
        try:
            await asyncio.wait_for(wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        finally:
            wake.clear()
        return True

    async def fetch(self, channel: StatisticsChannel) -> FetchResult:
        """Run one query and wrap whatever happens in a FetchResult."""
        kind = RequestKind.DETAILED if self._detailed else RequestKind.SUMMARY
        try:
            if self._request_timeout is None:
                snapshot = await channel.request(kind)
            else:
                snapshot = await asyncio.wait_for(channel.request(kind), self._request_timeout)
        except asyncio.TimeoutError:
            error = RequestTimeout(f"no reply within {self._request_timeout:.1f}s")
            log.error("failed to fetch memory statistics: %s", error)
            return FetchResult(snapshot=None, error=error, fetched_at=datetime.now())
        except MemBarError as exc:
            log.error("failed to fetch memory statistics: %s", exc)
            return FetchResult(snapshot=None, error=exc, fetched_at=datetime.now())

        log.debug(
            "memory statistics updated: %s, %s, %s",
            snapshot.pressure.value,
            snapshot.used_display,
            snapshot.swap_display,
        )
        return FetchResult(snapshot=snapshot, error=None, fetched_at=datetime.now())

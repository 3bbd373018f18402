"""
Reconnecting client channel to the statistics service.

State machine::

    DISCONNECTED --open()--> CONNECTING --handshake--> CONNECTED
    CONNECTED --transport lost--> INTERRUPTED --delay--> CONNECTING
    CONNECTING --connect failed--> INTERRUPTED
    any --close() / rejected / corrupt stream--> INVALIDATED (terminal)

All state lives on the event loop that opened the channel; nothing here is
safe to touch from another thread.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from membar import protocol
from membar.errors import (
    ChannelError,
    ChannelInterrupted,
    ChannelInvalidated,
    ChannelNoConnection,
    CounterUnavailable,
    ProtocolError,
)
from membar.models import DetailedMemorySnapshot, MemorySnapshot
from membar.protocol import ErrorKind, RequestKind

log = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_CONNECT_TIMEOUT = 5.0


class ChannelState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    INTERRUPTED = "interrupted"
    INVALIDATED = "invalidated"


class StatisticsChannel:
    """
    Client side of the statistics protocol.

    Requests issued while connecting wait for the handshake. Requests issued
    while disconnected, interrupted or invalidated fail immediately. After an
    interruption the channel reconnects on its own every `reconnect_delay`
    seconds until it succeeds or is closed.
    """

    def __init__(
        self,
        endpoint: Path | str | None = None,
        *,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        self._endpoint = Path(endpoint) if endpoint is not None else protocol.default_endpoint()
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = connect_timeout

        self._state = ChannelState.DISCONNECTED
        self._state_changed = asyncio.Event()
        self._writer: asyncio.StreamWriter | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._next_id = 0

        self._connect_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ChannelState:
        """Get the current connection state."""
        return self._state

    @property
    def endpoint(self) -> Path:
        """Get the socket path of the service."""
        return self._endpoint

    def open(self) -> None:
        """Start connecting. Must be called from the owning event loop."""
        if self._state is ChannelState.INVALIDATED:
            raise ChannelInvalidated("channel was invalidated; create a new one")
        if self._state is ChannelState.DISCONNECTED:
            self._begin_connect()

    async def close(self) -> None:
        """Tear the channel down for good."""
        writer = self._writer
        self._invalidate("channel closed")
        if writer is not None:
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def __aenter__(self) -> StatisticsChannel:
        self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def summary(self) -> MemorySnapshot:
        """Query the memory summary."""
        return await self.request(RequestKind.SUMMARY)

    async def detailed(self) -> DetailedMemorySnapshot:
        """Query the detailed memory breakdown."""
        snapshot = await self.request(RequestKind.DETAILED)
        if not isinstance(snapshot, DetailedMemorySnapshot):
            raise ChannelError(f"{RequestKind.DETAILED.value} returned a summary")
        return snapshot

    async def request(self, kind: RequestKind) -> MemorySnapshot:
        """
        Send one query and wait for its reply.

        There is no per-request timeout; wrap the call in asyncio.wait_for
        if bounded latency matters.

        Raises:
            ChannelNoConnection: channel not opened, or already invalidated.
            ChannelInterrupted: connection lost before the reply arrived.
            ChannelInvalidated: channel torn down while the request was pending,
                or the reply could not be decoded.
            CounterUnavailable: the service could not read the OS counters.
        """
        while self._state is ChannelState.CONNECTING:
            event = self._state_changed
            await event.wait()

        if self._state in (ChannelState.DISCONNECTED, ChannelState.INVALIDATED):
            raise ChannelNoConnection(f"no connection to {protocol.ENDPOINT_NAME}")
        if self._state is ChannelState.INTERRUPTED:
            raise ChannelInterrupted("connection interrupted; reconnecting")

        writer = self._writer
        if writer is None:
            raise ChannelNoConnection(f"no connection to {protocol.ENDPOINT_NAME}")
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            try:
                await protocol.write_message(writer, protocol.request(request_id, kind))
            except (ConnectionError, OSError) as exc:
                log.error("connection interrupted while sending: %s", exc)
                self._interrupt()
            reply = await future
        finally:
            self._pending.pop(request_id, None)

        try:
            return self._unwrap(kind, reply)
        except ProtocolError as exc:
            log.error("malformed reply from service: %s", exc)
            self._invalidate(str(exc))
            raise ChannelInvalidated(f"malformed reply: {exc}") from exc

    def _unwrap(self, kind: RequestKind, reply: dict[str, Any]) -> MemorySnapshot:
        if reply.get("ok"):
            return protocol.decode_result(kind, reply.get("result") or {})
        error = reply.get("error") or {}
        if not isinstance(error, dict):
            raise ProtocolError(f"malformed {kind.value} error: {error!r}")
        message = str(error.get("message", "unknown error"))
        if error.get("kind") == ErrorKind.UNAVAILABLE.value:
            raise CounterUnavailable(message)
        raise ChannelError(f"{kind.value} failed: {message}")

    # State transitions

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        log.info("channel %s -> %s", self._state.value, state.value)
        self._state = state
        self._state_changed.set()
        self._state_changed = asyncio.Event()

    def _begin_connect(self) -> None:
        self._set_state(ChannelState.CONNECTING)
        self._connect_task = asyncio.create_task(self._connect())

    async def _connect(self) -> None:
        log.info("setting up connection to %s at %s", protocol.ENDPOINT_NAME, self._endpoint)
        writer: asyncio.StreamWriter | None = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self._endpoint)), self._connect_timeout
            )
            await protocol.write_message(writer, protocol.hello())
            reply = await asyncio.wait_for(protocol.read_message(reader), self._connect_timeout)
        except ProtocolError as exc:
            log.error("handshake failed: %s", exc)
            self._close_writer(writer)
            self._invalidate(str(exc))
            return
        except (OSError, asyncio.TimeoutError) as exc:
            log.warning("connection attempt failed: %s", exc)
            self._close_writer(writer)
            self._interrupt()
            return

        if reply is None:
            log.warning("service closed the connection during handshake")
            self._close_writer(writer)
            self._interrupt()
            return
        if not reply.get("accepted"):
            log.error("service rejected connection: %s", reply.get("reason"))
            self._close_writer(writer)
            self._invalidate(f"rejected: {reply.get('reason')}")
            return

        self._writer = writer
        self._reader_task = asyncio.create_task(self._read_replies(reader))
        self._set_state(ChannelState.CONNECTED)

    async def _read_replies(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                message = await protocol.read_message(reader)
                if message is None:
                    break
                request_id = message.get("id")
                if not isinstance(request_id, int) or isinstance(request_id, bool):
                    raise ProtocolError(f"reply with invalid id {request_id!r}")
                future = self._pending.get(request_id)
                if future is None or future.done():
                    log.warning("reply for unknown request %r", request_id)
                    continue
                future.set_result(message)
        except ProtocolError as exc:
            log.error("corrupt stream from service: %s", exc)
            self._invalidate(str(exc))
            return
        except (ConnectionError, OSError) as exc:
            log.warning("read failed: %s", exc)
        except Exception:
            log.exception("reply reader failed")
        # A reader left over from an earlier connection must not tear down
        # its successor
        if self._reader_task is asyncio.current_task():
            log.error("connection interrupted")
            self._interrupt()

    def _interrupt(self) -> None:
        if self._state in (ChannelState.INTERRUPTED, ChannelState.INVALIDATED):
            return
        reader_task = self._reader_task
        if reader_task is not None and reader_task is not asyncio.current_task():
            reader_task.cancel()
        self._reader_task = None
        self._close_writer(self._writer)
        self._writer = None
        self._fail_pending(ChannelInterrupted, "connection interrupted")
        self._set_state(ChannelState.INTERRUPTED)
        self._retry_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        if self._state is ChannelState.INTERRUPTED:
            log.info("attempting to reconnect")
            self._begin_connect()

    def _invalidate(self, reason: str) -> None:
        if self._state is ChannelState.INVALIDATED:
            return
        current = asyncio.current_task()
        for task in (self._connect_task, self._reader_task, self._retry_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._close_writer(self._writer)
        self._writer = None
        self._fail_pending(ChannelInvalidated, reason)
        self._set_state(ChannelState.INVALIDATED)

    def _fail_pending(self, error_type: type[ChannelError], message: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error_type(message))
        self._pending.clear()

    @staticmethod
    def _close_writer(writer: asyncio.StreamWriter | None) -> None:
        if writer is not None:
            writer.close()

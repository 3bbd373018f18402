"""Statistics service and its socket listener."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from membar import protocol
from membar.counters import CounterSource, default_counter_source, read_raw
from membar.derive import derive_detailed, derive_summary
from membar.errors import CounterUnavailable, ProtocolError
from membar.models import DetailedMemorySnapshot, MemorySnapshot
from membar.protocol import ErrorKind, RequestKind

log = logging.getLogger(__name__)


class StatisticsService:
    """
    Answers summary and detailed queries.

    Holds no state between calls: every call is a fresh read of the OS
    counters, so concurrent callers never interfere.
    """

    def __init__(self, source: CounterSource | None = None) -> None:
        self._source = source if source is not None else default_counter_source()

    def summary(self) -> MemorySnapshot:
        """Summary snapshot from a fresh counter read."""
        snapshot = derive_summary(read_raw(self._source))
        log.info(
            "summary: pressure=%s used=%s swap=%s",
            snapshot.pressure.value,
            snapshot.used_display,
            snapshot.swap_display,
        )
        return snapshot

    def detailed(self) -> DetailedMemorySnapshot:
        """Detailed snapshot from a fresh counter read."""
        snapshot = derive_detailed(read_raw(self._source))
        log.info(
            "detailed: pressure=%s used=%s swap=%s",
            snapshot.pressure.value,
            snapshot.used_display,
            snapshot.swap_display,
        )
        log.debug(
            "breakdown: total=%.2f active=%.2f wired=%.2f compressed=%.2f GB",
            snapshot.total_gb,
            snapshot.active_gb,
            snapshot.wired_gb,
            snapshot.compressed_gb,
        )
        return snapshot

    def handle(self, kind: RequestKind) -> MemorySnapshot:
        """Answer one request kind."""
        if kind is RequestKind.DETAILED:
            return self.detailed()
        return self.summary()


class StatisticsServer:
    """
    Unix-socket listener for a StatisticsService.

    Every connection must greet first. After that any number of requests
    may be outstanding; each gets exactly one reply, tagged with its id.
    Service calls run in worker threads so a slow OS read never stalls
    other connections.
    """

    def __init__(self, service: StatisticsService, path: Path | str | None = None) -> None:
        self._service = service
        self._path = Path(path) if path is not None else protocol.default_endpoint()
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def path(self) -> Path:
        """Get the socket path."""
        return self._path

    @property
    def is_serving(self) -> bool:
        """Check if the listener is accepting connections."""
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        """Bind the socket and start accepting connections."""
        if self.is_serving:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # A stale socket from a crashed helper blocks bind()
        self._path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(self._handle_connection, path=str(self._path))
        self._path.chmod(0o600)
        log.info("listening on %s", self._path)

    async def stop(self) -> None:
        """Close the listener and every open connection."""
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None
        self._path.unlink(missing_ok=True)
        log.info("stopped listening on %s", self._path)

    async def serve_forever(self) -> None:
        """Serve until cancelled, then clean up."""
        await self.start()
        server = self._server
        if server is None:
            raise RuntimeError(f"listener on {self._path} did not start")
        try:
            await server.serve_forever()
        finally:
            await self.stop()

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        log.info("new connection request received")
        self._writers.add(writer)
        write_lock = asyncio.Lock()
        tasks: set[asyncio.Task[None]] = set()
        try:
            greeting = await protocol.read_message(reader)
            if greeting is None:
                return
            reply = protocol.hello_reply(greeting)
            await protocol.write_message(writer, reply)
            if not reply["accepted"]:
                log.warning("connection rejected: %s", reply.get("reason"))
                return
            log.info("connection accepted")

            while True:
                message = await protocol.read_message(reader)
                if message is None:
                    break
                task = asyncio.create_task(self._answer(message, writer, write_lock))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except ProtocolError as exc:
            log.warning("dropping connection: %s", exc)
        except (ConnectionError, OSError) as exc:
            log.info("connection lost: %s", exc)
        finally:
            for task in list(tasks):
                task.cancel()
            self._writers.discard(writer)
            writer.close()
            log.info("connection closed")

    async def _answer(
        self,
        message: dict[str, Any],
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
    ) -> None:
        reply = await self._dispatch(message)
        try:
            async with write_lock:
                await protocol.write_message(writer, reply)
        except (ConnectionError, OSError) as exc:
            log.info("could not deliver reply %r: %s", message.get("id"), exc)

    async def _dispatch(self, message: dict[str, Any]) -> dict[str, Any]:
        request_id = message.get("id")
        try:
            kind = RequestKind(message.get("method"))
        except ValueError:
            return protocol.error_reply(
                request_id, ErrorKind.BAD_REQUEST, f"unknown method {message.get('method')!r}"
            )

        log.info("%s called", kind.value)
        try:
            snapshot = await asyncio.to_thread(self._service.handle, kind)
        except CounterUnavailable as exc:
            log.warning("%s failed: %s", kind.value, exc)
            return protocol.error_reply(request_id, ErrorKind.UNAVAILABLE, str(exc))
        except Exception as exc:
            log.exception("%s raised unexpectedly", kind.value)
            return protocol.error_reply(request_id, ErrorKind.INTERNAL, str(exc))
        return protocol.ok_reply(request_id, snapshot)

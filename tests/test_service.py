"""Tests for the statistics service and its socket listener."""

import asyncio
import stat

import pytest

from membar import protocol
from membar.errors import CounterUnavailable
from membar.models import DetailedMemorySnapshot, MemorySnapshot, PressureLevel
from membar.protocol import RequestKind
from membar.service import StatisticsServer, StatisticsService


class TestStatisticsService:
    def test_summary(self, fake_source):
        snapshot = StatisticsService(fake_source).summary()

        assert type(snapshot) is MemorySnapshot
        assert snapshot.pressure is PressureLevel.NORMAL
        assert snapshot.used_display == "4.5 GB of 16.0 GB"
        assert snapshot.swap_display == "0 MB"

    def test_detailed(self, fake_source):
        snapshot = StatisticsService(fake_source).detailed()

        assert isinstance(snapshot, DetailedMemorySnapshot)
        assert snapshot.used_display == "4.50 GB (App:3.00 + W:1.00 + C:512 MB)"
        assert snapshot.total_gb == 16.0

    def test_repeated_calls_agree(self, fake_source):
        service = StatisticsService(fake_source)
        assert service.summary() == service.summary()
        assert service.detailed() == service.detailed()

    def test_each_call_reads_fresh_counters(self, fake_source):
        service = StatisticsService(fake_source)
        service.summary()
        service.summary()
        assert fake_source.calls.count("pages") == 2

    def test_unavailable_propagates(self, source_factory):
        service = StatisticsService(source_factory(fail=("pages",)))
        with pytest.raises(CounterUnavailable):
            service.summary()

    def test_handle_dispatches_on_kind(self, fake_source):
        service = StatisticsService(fake_source)
        assert type(service.handle(RequestKind.SUMMARY)) is MemorySnapshot
        assert isinstance(service.handle(RequestKind.DETAILED), DetailedMemorySnapshot)


async def _greet(path, greeting=None):
    reader, writer = await asyncio.open_unix_connection(str(path))
    await protocol.write_message(writer, greeting or protocol.hello())
    reply = await protocol.read_message(reader)
    return reader, writer, reply


class TestStatisticsServer:
    @pytest.mark.asyncio
    async def test_socket_is_private(self, fake_source, socket_path):
        server = StatisticsServer(StatisticsService(fake_source), socket_path)
        await server.start()
        try:
            assert server.is_serving
            assert stat.S_IMODE(socket_path.stat().st_mode) == 0o600
        finally:
            await server.stop()
        assert not socket_path.exists()

    @pytest.mark.asyncio
    async def test_replaces_stale_socket(self, fake_source, socket_path):
        socket_path.write_bytes(b"")
        server = StatisticsServer(StatisticsService(fake_source), socket_path)
        await server.start()
        await server.stop()

    @pytest.mark.asyncio
    async def test_request_and_reply(self, fake_source, socket_path):
        server = StatisticsServer(StatisticsService(fake_source), socket_path)
        await server.start()
        try:
            reader, writer, reply = await _greet(socket_path)
            assert reply["accepted"] is True

            await protocol.write_message(writer, protocol.request(7, RequestKind.SUMMARY))
            answer = await protocol.read_message(reader)

            assert answer["id"] == 7
            assert answer["ok"] is True
            assert answer["result"]["used_display"] == "4.5 GB of 16.0 GB"
            writer.close()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_wrong_service_name_is_rejected(self, fake_source, socket_path):
        server = StatisticsServer(StatisticsService(fake_source), socket_path)
        await server.start()
        try:
            reader, writer, reply = await _greet(socket_path, {"hello": "other", "version": 1})
            assert reply["accepted"] is False
            assert await protocol.read_message(reader) is None
            writer.close()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_unknown_method_is_bad_request(self, fake_source, socket_path):
        server = StatisticsServer(StatisticsService(fake_source), socket_path)
        await server.start()
        try:
            reader, writer, _ = await _greet(socket_path)
            await protocol.write_message(writer, {"id": 1, "method": "GetEverything"})
            answer = await protocol.read_message(reader)

            assert answer["ok"] is False
            assert answer["error"]["kind"] == "BadRequest"
            writer.close()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_unreadable_counters_reply_unavailable(self, source_factory, socket_path):
        service = StatisticsService(source_factory(fail=("pages",)))
        server = StatisticsServer(service, socket_path)
        await server.start()
        try:
            reader, writer, _ = await _greet(socket_path)
            await protocol.write_message(writer, protocol.request(3, RequestKind.DETAILED))
            answer = await protocol.read_message(reader)

            assert answer == {
                "id": 3,
                "ok": False,
                "error": {"kind": "Unavailable", "message": "page counters unreadable: pages failed"},
            }
            writer.close()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, fake_source, socket_path):
        service = StatisticsService(fake_source)

        def broken(kind):
            raise RuntimeError("boom")

        service.handle = broken
        server = StatisticsServer(service, socket_path)
        await server.start()
        try:
            reader, writer, _ = await _greet(socket_path)
            await protocol.write_message(writer, protocol.request(1, RequestKind.SUMMARY))
            answer = await protocol.read_message(reader)

            assert answer["error"]["kind"] == "Internal"
            writer.close()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_pipelined_requests_each_get_one_reply(self, fake_source, socket_path):
        server = StatisticsServer(StatisticsService(fake_source), socket_path)
        await server.start()
        try:
            reader, writer, _ = await _greet(socket_path)
            for request_id in range(1, 6):
                kind = RequestKind.DETAILED if request_id % 2 else RequestKind.SUMMARY
                await protocol.write_message(writer, protocol.request(request_id, kind))

            answers = [await protocol.read_message(reader) for _ in range(5)]

            assert sorted(answer["id"] for answer in answers) == [1, 2, 3, 4, 5]
            assert all(answer["ok"] for answer in answers)
            writer.close()
        finally:
            await server.stop()

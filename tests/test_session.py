"""Tests for the stream session lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from martini_realtime.config import RealtimeConfig
from martini_realtime.exceptions import StreamConnectionError
from martini_realtime.sync.router import EventRouter
from martini_realtime.sync.session import SessionState, StreamSession

HANDSHAKE = b"event: connected\ndata: {}\n\n"


@pytest.fixture
async def session(data_source, transport, fast_config):
    """Session over the fake transport, closed after the test."""
    stream_session = StreamSession(EventRouter(data_source), config=fast_config, transport=transport)
    yield stream_session
    await stream_session.close()


class TestConnect:
    """Tests for establishing the stream."""

    async def test_request_targets_project_with_headers(self, session, transport, wait_until):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)

        stream = transport.latest
        assert stream.url == "https://trymartini.com/scripts/sub/project.php?projectId=p-1"
        assert stream.headers == {
            "Accept": "text/event-stream",
            "Authorization": "Bearer secret",
        }
        assert session.state is SessionState.STREAMING
        assert session.is_connected is False

    async def test_no_authorization_header_without_credential(self, session, transport, wait_until):
        session.update_target("p-1", None, active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        assert "Authorization" not in transport.latest.headers

    async def test_handshake_marks_connected_without_fetching(
        self, session, transport, data_source, wait_until
    ):
        connected = []
        session.on_connected = lambda: connected.append(True)
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)

        transport.latest.push(HANDSHAKE)
        await wait_until(lambda: session.is_connected)

        assert session.last_event_name == "connected"
        assert connected == [True]
        await session.router.join()
        assert data_source.log == []

    async def test_only_one_attempt_in_flight(self, session, transport, wait_until):
        session.update_target("p-1", "secret", active=True)
        session.update_target("p-1", "secret", active=True)
        assert session.connect_if_needed() is False
        await wait_until(lambda: len(transport.streams) == 1)
        await asyncio.sleep(0.02)
        assert len(transport.streams) == 1

    async def test_credential_provider_is_read_on_every_attempt(
        self, data_source, transport, fast_config, wait_until
    ):
        session = StreamSession(
            EventRouter(data_source),
            config=fast_config,
            transport=transport,
            credential_provider=data_source.current_credential,
        )
        session.update_target("p-1", "ignored", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        assert transport.latest.headers["Authorization"] == "Bearer token-1"

        data_source.credential = "token-2"
        transport.latest.close()
        await wait_until(lambda: len(transport.streams) == 2)
        assert transport.latest.headers["Authorization"] == "Bearer token-2"
        await session.close()


class TestEventFlow:
    """Tests for bytes reaching the router."""

    async def test_records_split_across_chunks_are_routed_in_order(
        self, session, transport, data_source, wait_until
    ):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)

        stream = transport.latest
        stream.push(b"event: frame-order-upd")
        stream.push(b"ated\ndata: {}\n\nevent: creative-del")
        stream.push(b"eted\ndata: {}\n")
        stream.push(b"\n")

        await wait_until(lambda: session.last_event_name == "creative-deleted")
        await session.router.join()
        assert data_source.fetches == ["fetch_frames", "fetch_creatives"]

    async def test_no_record_routed_after_deactivation(
        self, session, transport, data_source, wait_until
    ):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        stale_generation = session.generation
        stream = transport.latest
        stream.push(b"event: reload\ndata: {}")  # partial record in flight

        await asyncio.sleep(0.01)
        session.update_target("p-1", "secret", active=False)

        # Delayed delivery from the torn-down stream
        stream.push(b"\n\nevent: reload\n\n")
        assert session.feed(b"event: reload\n\n", stale_generation) == 0
        await asyncio.sleep(0.02)

        await session.router.join()
        assert data_source.log == []
        assert session.state is SessionState.IDLE
        assert session.in_flight is False
        assert session.reconnect_pending is False

    async def test_deactivation_discards_queued_plans(
        self, session, transport, data_source, wait_until
    ):
        data_source.delay = 0.05
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        transport.latest.push(b"event: frame-order-updated\ndata: {}\n\n" * 3)
        await wait_until(lambda: data_source.fetches == ["fetch_frames"])
        assert session.router.pending == 2

        session.update_target("p-1", None, active=False)
        assert session.router.pending == 0

        await session.router.join()
        await asyncio.sleep(data_source.delay * 2)
        assert data_source.fetches == ["fetch_frames"]

    async def test_switching_project_tears_down_old_stream(
        self, session, transport, data_source, wait_until
    ):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        old_stream = transport.latest

        session.update_target("p-2", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 2)
        assert transport.latest.url.endswith("projectId=p-2")

        old_stream.push(b"event: reload\n\n")
        await asyncio.sleep(0.02)
        await session.router.join()
        assert data_source.log == []
        assert session.resource_id == "p-2"

    async def test_credential_change_reuses_stream(self, session, transport, wait_until):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)

        session.update_target("p-1", "rotated", active=True)
        await asyncio.sleep(0.02)
        assert len(transport.streams) == 1


class TestReconnect:
    """Tests for reconnect scheduling."""

    async def test_remote_close_schedules_reconnect(self, session, transport, wait_until):
        disconnected = []
        session.on_disconnected = lambda: disconnected.append(True)
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        transport.latest.push(HANDSHAKE)
        await wait_until(lambda: session.is_connected)

        transport.latest.close()
        await wait_until(lambda: session.reconnect_pending)
        assert session.is_connected is False
        assert disconnected == [True]

        await wait_until(lambda: len(transport.streams) == 2)

    async def test_error_is_recorded_and_retried(self, session, transport, wait_until):
        errors = []
        session.on_error = errors.append
        transport.open_errors.append(StreamConnectionError("https://example", status=503))

        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: session.reconnect_pending)
        assert "HTTP 503" in session.last_error
        assert isinstance(errors[0], StreamConnectionError)

        await wait_until(lambda: len(transport.streams) == 1)
        assert session.connection_attempts == 2

    async def test_reconnect_scheduling_is_idempotent(self, session, transport, wait_until):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        generation = session.generation

        session._connection_lost(generation, ConnectionResetError("first"))
        session._connection_lost(generation, ConnectionResetError("second"))
        assert session._schedule_reconnect() is False

        await asyncio.sleep(session.config.reconnect_delay * 3)
        # One reconnect from the timer; the original attempt is still open
        assert session.connection_attempts == 2
        assert len(transport.streams) == 2

        # The superseded attempt finishing later changes nothing
        transport.streams[0].close()
        await asyncio.sleep(0.01)
        assert session.reconnect_pending is False
        assert session.in_flight is True

    async def test_failing_observers_do_not_stop_retrying(
        self, session, transport, wait_until, caplog
    ):
        def broken(*args):
            raise RuntimeError("observer bug")

        session.on_error = broken
        session.on_connected = broken
        session.on_disconnected = broken
        transport.open_errors.append(ConnectionRefusedError("refused"))

        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        transport.latest.push(HANDSHAKE)
        await wait_until(lambda: session.is_connected)

        transport.latest.close()
        await wait_until(lambda: len(transport.streams) == 2)
        assert session.in_flight is True
        assert "observer bug" in caplog.text

    async def test_deactivation_cancels_pending_reconnect(self, session, transport, wait_until):
        transport.open_errors.append(ConnectionRefusedError("refused"))
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: session.reconnect_pending)

        session.update_target("p-1", "secret", active=False)
        assert session.reconnect_pending is False
        await asyncio.sleep(session.config.reconnect_delay * 2)
        assert transport.streams == []

    async def test_invalid_target_surfaces_error_then_retries(
        self, data_source, transport, wait_until
    ):
        config = RealtimeConfig(base_url="not a url", reconnect_delay=0.05)
        session = StreamSession(EventRouter(data_source), config=config, transport=transport)

        session.update_target("p-1", "secret", active=True)
        assert session.last_error.startswith("Invalid realtime URL")
        assert session.reconnect_pending is True
        assert transport.streams == []
        await session.close()


class TestDeactivate:
    """Tests for going idle."""

    async def test_empty_resource_id_deactivates(self, session, transport, wait_until):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)

        session.update_target("", "secret", active=True)
        assert session.in_flight is False
        assert session.state is SessionState.IDLE

    async def test_reactivating_same_project_reconnects(self, session, transport, wait_until):
        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 1)
        session.update_target("p-1", "secret", active=False)

        session.update_target("p-1", "secret", active=True)
        await wait_until(lambda: len(transport.streams) == 2)

    async def test_close_releases_transport(self, session, transport):
        await session.close()
        assert transport.closed is True

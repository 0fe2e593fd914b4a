"""Unit tests for the per-connection conversation coordinator.

Drives the gateway through in-memory connections with fake voice and room
providers and checks the messages each client sees plus the resources left
behind.
"""

import asyncio
import base64

import pytest

from gateway.errors import CapacityExceeded, InactiveSession, TransportError, UpstreamFailure
from gateway.registry import SessionRegistry
from gateway.session import ConnectionState, SessionStatus
from gateway.voice.events import VoiceAudioEvent, VoiceErrorEvent


async def start_streaming(connection, wait_until) -> None:
    connection.start()
    await wait_until(lambda: "listening" in connection.statuses())


class TestConversationLifecycle:
    """Start, stream and stop a conversation."""

    async def test_initial_system_status(self, connect, gateway) -> None:
        """Test every new connection is told the current counts."""
        connection = await connect()

        status = connection.of_type("system_status")[0]
        assert status.active_sessions == 0
        assert status.max_sessions == 30
        assert status.gemini_model == "gemini-test-model"

    async def test_start_then_stop(
        self, connect, gateway, fake_voice, fake_rooms, store, wait_until
    ) -> None:
        """Test connecting → listening → idle and the session count going back down."""
        connection = await connect()

        await start_streaming(connection, wait_until)
        assert connection.statuses() == ["connecting", "listening"]
        listening = connection.of_type("conversation_status")[-1]
        assert listening.session_id == "voice_1"
        assert gateway.registry.active_count == 1
        assert any(m.active_sessions == 1 for m in connection.of_type("system_status"))
        assert fake_voice.prompts and "Portuguese" in fake_voice.prompts[0]

        records = await store.list_active()
        assert len(records) == 1
        assert records[0].status == SessionStatus.ACTIVE
        assert records[0].room_session_id == "lk_test_1"
        assert records[0].voice_session_id == "voice_1"

        connection.stop()
        await wait_until(lambda: connection.statuses()[-1] == "idle")

        assert gateway.registry.active_count == 0
        assert connection.of_type("system_status")[-1].active_sessions == 0
        assert fake_voice.closed == ["voice_1"]
        assert fake_rooms.released == ["lk_test_1"]
        assert await store.list_active() == []
        ended = await store.get(records[0].id)
        assert ended is not None and ended.ended_at is not None

    async def test_restart_after_stop(self, connect, fake_voice, wait_until) -> None:
        """Test a connection can start a second conversation after stopping."""
        connection = await connect()
        await start_streaming(connection, wait_until)
        connection.stop()
        await wait_until(lambda: connection.statuses()[-1] == "idle")

        connection.start()
        await wait_until(lambda: connection.statuses()[-1] == "listening")
        assert len(fake_voice.opened) == 2

    async def test_start_while_streaming_rejected(self, connect, fake_voice, wait_until) -> None:
        """Test a second start on a live conversation is refused."""
        connection = await connect()
        await start_streaming(connection, wait_until)

        connection.start()
        await wait_until(lambda: len(connection.errors()) == 1)

        assert connection.errors() == ["Conversation already in progress"]
        assert len(fake_voice.opened) == 1

    async def test_stop_without_session(self, connect, gateway, wait_until) -> None:
        """Test stop on an idle connection reports an error and changes nothing."""
        connection = await connect()

        connection.stop()
        await wait_until(lambda: len(connection.errors()) == 1)

        assert connection.errors() == [InactiveSession.user_message]
        assert gateway.coordinator(connection.connection_id).state == ConnectionState.IDLE


class TestCapacity:
    """Global session ceiling."""

    async def test_capacity_rejection(
        self, connect, gateway, fake_rooms, store, metrics, wait_until
    ) -> None:
        """Test a start beyond the ceiling is rejected without allocating anything."""
        gateway.registry = SessionRegistry(1)
        first = await connect()
        second = await connect()

        await start_streaming(first, wait_until)
        second.start()
        await wait_until(lambda: len(second.errors()) == 1)

        assert second.errors() == [CapacityExceeded.user_message]
        assert second.statuses() == []
        assert len(fake_rooms.allocated) == 1
        assert len(await store.list_active()) == 1
        assert metrics.value("conversations_rejected_total") == 1

    async def test_thirty_one_concurrent_starts(self, connect, gateway, wait_until) -> None:
        """Test exactly 30 of 31 simultaneous starts succeed."""
        connections = [await connect() for _ in range(31)]

        for connection in connections:
            connection.start()

        def settled() -> bool:
            return all(
                "listening" in c.statuses() or c.errors() for c in connections
            )

        await wait_until(settled, timeout=5.0)

        started = [c for c in connections if "listening" in c.statuses()]
        rejected = [c for c in connections if c.errors()]
        assert len(started) == 30
        assert len(rejected) == 1
        assert rejected[0].errors() == [CapacityExceeded.user_message]
        assert gateway.registry.active_count == 30
        assert all(
            m.active_sessions <= 30 for c in connections for m in c.of_type("system_status")
        )

    async def test_other_connections_see_counts(self, connect, wait_until) -> None:
        """Test session count changes are broadcast to every connection."""
        owner = await connect()
        observer = await connect()

        await start_streaming(owner, wait_until)
        await wait_until(
            lambda: any(m.active_sessions == 1 for m in observer.of_type("system_status"))
        )

        owner.stop()
        await wait_until(lambda: observer.of_type("system_status")[-1].active_sessions == 0)
        assert observer.statuses() == []

    async def test_failed_start_corrects_broadcast_count(
        self, connect, gateway, fake_voice, upstream_failure, wait_until
    ) -> None:
        """Test observers see the count drop when an in-flight start fails."""
        gate = asyncio.Event()
        open_voice = fake_voice.open

        async def first_open_fails(system_prompt: str):
            if not fake_voice.prompts:
                fake_voice.prompts.append(system_prompt)
                await gate.wait()
                raise upstream_failure
            return await open_voice(system_prompt)

        fake_voice.open = first_open_fails
        observer = await connect()
        failing = await connect()
        winning = await connect()

        failing.start()
        await wait_until(lambda: gateway.registry.active_count == 1)
        await start_streaming(winning, wait_until)
        await wait_until(lambda: observer.of_type("system_status")[-1].active_sessions == 2)

        gate.set()
        await wait_until(lambda: failing.errors() == [UpstreamFailure.user_message])
        await wait_until(lambda: observer.of_type("system_status")[-1].active_sessions == 1)
        assert gateway.registry.active_count == 1


class TestStartFailures:
    """Rollback when a remote allocation fails."""

    async def test_voice_failure_releases_room(
        self, connect, gateway, fake_voice, fake_rooms, store, metrics, wait_until
    ) -> None:
        """Test an upstream failure leaves nothing allocated and returns to idle."""
        fake_voice.fail_open = UpstreamFailure("voice", "Gemini unavailable")
        connection = await connect()

        connection.start()
        await wait_until(lambda: len(connection.errors()) == 1)

        assert connection.errors() == [UpstreamFailure.user_message]
        assert connection.statuses() == ["connecting"]
        assert fake_rooms.released == ["lk_test_1"]
        assert gateway.registry.active_count == 0
        assert await store.list_active() == []
        assert metrics.value("upstream_failures_total") == 1
        assert gateway.coordinator(connection.connection_id).state == ConnectionState.IDLE

        fake_voice.fail_open = None
        await start_streaming(connection, wait_until)

    async def test_room_failure_skips_voice(
        self, connect, gateway, fake_voice, fake_rooms, wait_until
    ) -> None:
        """Test a room failure never opens a voice session."""
        fake_rooms.fail_allocate = UpstreamFailure("room", "LiveKit down")
        connection = await connect()

        connection.start()
        await wait_until(lambda: len(connection.errors()) == 1)

        assert connection.errors() == [UpstreamFailure.user_message]
        assert fake_voice.opened == []
        assert gateway.registry.active_count == 0

    async def test_unexpected_exception_is_upstream_failure(
        self, connect, fake_voice, wait_until
    ) -> None:
        """Test any exception from a provider is reported as an upstream failure."""
        fake_voice.fail_open = ConnectionResetError("socket reset")
        connection = await connect()

        connection.start()
        await wait_until(lambda: len(connection.errors()) == 1)

        assert connection.errors() == [UpstreamFailure.user_message]

    async def test_start_timeout(
        self, connect, gateway, fake_voice, fake_rooms, wait_until
    ) -> None:
        """Test a voice open that never completes is abandoned."""
        gateway.config.session.start_timeout_seconds = 0.1
        fake_voice.open_gate = asyncio.Event()
        connection = await connect()

        connection.start()
        await wait_until(lambda: len(connection.errors()) == 1)

        assert connection.errors() == [UpstreamFailure.user_message]
        assert fake_rooms.released == ["lk_test_1"]
        assert gateway.registry.active_count == 0


class TestStartRaces:
    """Stop or disconnect while remote sessions are still being allocated."""

    async def test_stop_during_start(
        self, connect, gateway, fake_voice, fake_rooms, store, wait_until
    ) -> None:
        """Test a stop sent while connecting releases the session once it arrives."""
        fake_voice.open_gate = asyncio.Event()
        connection = await connect()

        connection.start()
        await wait_until(lambda: connection.statuses() == ["connecting"])
        connection.stop()
        await asyncio.sleep(0.05)
        fake_voice.open_gate.set()

        await wait_until(lambda: connection.statuses()[-1] == "idle")
        assert "listening" not in connection.statuses()
        assert fake_voice.closed == ["voice_1"]
        assert fake_rooms.released == ["lk_test_1"]
        assert gateway.registry.active_count == 0
        assert await store.list_active() == []

    async def test_stop_during_failed_start(
        self, connect, gateway, fake_voice, upstream_failure, wait_until
    ) -> None:
        """Test a stop sent while connecting still ends in idle when the start fails."""
        fake_voice.open_gate = asyncio.Event()
        fake_voice.fail_open = upstream_failure
        connection = await connect()

        connection.start()
        await wait_until(lambda: connection.statuses() == ["connecting"])
        connection.stop()
        await asyncio.sleep(0.05)
        fake_voice.open_gate.set()

        await wait_until(lambda: connection.statuses()[-1] == "idle")
        assert connection.errors() == [UpstreamFailure.user_message]
        assert connection.statuses() == ["connecting", "idle"]
        assert gateway.registry.active_count == 0

    async def test_disconnect_during_start(
        self, connect, gateway, fake_voice, fake_rooms, store, wait_until
    ) -> None:
        """Test a slot reserved by a vanished client is freed after allocation finishes."""
        fake_voice.open_gate = asyncio.Event()
        connection = await connect()

        connection.start()
        await wait_until(lambda: connection.statuses() == ["connecting"])
        connection.disconnect()
        await asyncio.sleep(0.05)
        assert gateway.registry.active_count == 1

        fake_voice.open_gate.set()
        await wait_until(lambda: gateway.registry.active_count == 0)
        assert fake_voice.closed == ["voice_1"]
        assert fake_rooms.released == ["lk_test_1"]
        assert await store.list_active() == []


class TestStreaming:
    """Audio and voice events while streaming."""

    async def test_frames_forwarded_in_order(
        self, connect, fake_voice, metrics, wait_until
    ) -> None:
        """Test N audio frames produce N sends in arrival order."""
        connection = await connect()
        await start_streaming(connection, wait_until)

        frames = [bytes([i, i + 1, i + 2, i + 3]) for i in range(5)]
        for frame in frames[:3]:
            connection.feed({"type": "audio_data", "audioData": list(frame)})
        for frame in frames[3:]:
            connection.feed(frame)

        await wait_until(lambda: len(fake_voice.sent) == 5)
        assert fake_voice.sent == frames
        assert metrics.value("audio_frames_forwarded_total") == 5

    async def test_audio_without_session_dropped(
        self, connect, fake_voice, metrics, wait_until
    ) -> None:
        """Test audio on an idle connection is dropped without an error reply."""
        connection = await connect()

        connection.feed({"type": "audio_data", "audioData": [1, 2, 3, 4]})
        connection.stop()
        await wait_until(lambda: len(connection.errors()) == 1)

        assert fake_voice.sent == []
        assert connection.errors() == [InactiveSession.user_message]
        assert metrics.value("audio_frames_dropped_total") == 1

    async def test_full_send_queue_drops_frame(
        self, connect, fake_voice, metrics, wait_until
    ) -> None:
        """Test frames refused by the voice client are counted as dropped."""
        connection = await connect()
        await start_streaming(connection, wait_until)
        fake_voice.accept_frames = False

        connection.feed(b"\x00\x01")
        connection.stop()
        await wait_until(lambda: connection.statuses()[-1] == "idle")

        assert metrics.value("audio_frames_dropped_total") == 1

    async def test_audio_response_forwarded(self, connect, fake_voice, wait_until) -> None:
        """Test model audio reaches the client base64-encoded."""
        connection = await connect()
        await start_streaming(connection, wait_until)

        fake_voice.opened[0].emit(VoiceAudioEvent(data=b"\x01\x02\x03"))
        await wait_until(lambda: len(connection.of_type("audio_response")) == 1)

        message = connection.of_type("audio_response")[0]
        assert base64.b64decode(message.data) == b"\x01\x02\x03"

    async def test_voice_error_reported(self, connect, fake_voice, wait_until) -> None:
        """Test a provider error is relayed and the conversation continues."""
        connection = await connect()
        await start_streaming(connection, wait_until)

        fake_voice.opened[0].emit(VoiceErrorEvent(message="quota exceeded"))
        await wait_until(lambda: len(connection.errors()) == 1)

        assert "quota exceeded" in connection.errors()[0]
        assert connection.statuses()[-1] == "listening"

    async def test_provider_closes_session(
        self, connect, gateway, fake_voice, fake_rooms, store, wait_until
    ) -> None:
        """Test an unexpected provider close tears down and returns to idle."""
        connection = await connect()
        await start_streaming(connection, wait_until)

        fake_voice.end_remotely(fake_voice.opened[0])
        await wait_until(lambda: connection.statuses()[-1] == "idle")

        assert connection.errors() == ["Voice session ended: provider closed the session"]
        assert fake_rooms.released == ["lk_test_1"]
        assert gateway.registry.active_count == 0
        assert await store.list_active() == []

    async def test_malformed_message(self, connect, metrics, wait_until) -> None:
        """Test a bad frame gets an error reply and the connection keeps working."""
        connection = await connect()

        connection.feed("{not json")
        connection.feed({"type": "unknown_type"})
        await wait_until(lambda: len(connection.errors()) == 2)

        assert connection.errors() == ["Failed to process message"] * 2
        assert metrics.value("protocol_errors_total") == 2

        await start_streaming(connection, wait_until)


class TestTeardown:
    """Releasing resources on stop, disconnect and shutdown."""

    async def test_disconnect_while_streaming(
        self, connect, gateway, fake_voice, fake_rooms, store, wait_until
    ) -> None:
        """Test a dropped client releases both remote sessions and ends its record."""
        connection = await connect()
        await start_streaming(connection, wait_until)
        record = (await store.list_active())[0]

        connection.disconnect()
        await wait_until(lambda: gateway.connection_count == 0)

        assert fake_voice.closed == ["voice_1"]
        assert fake_rooms.released == ["lk_test_1"]
        assert gateway.registry.active_count == 0
        ended = await store.get(record.id)
        assert ended is not None and ended.status == SessionStatus.ENDED
        assert ended not in await store.list_active()

    async def test_transport_failure_while_streaming(
        self, connect, gateway, fake_voice, fake_rooms, wait_until
    ) -> None:
        """Test a broken channel is treated like a disconnect."""
        connection = await connect()
        await start_streaming(connection, wait_until)

        connection.fail(TransportError("connection reset by peer"))
        await wait_until(lambda: gateway.connection_count == 0)

        assert fake_voice.closed == ["voice_1"]
        assert fake_rooms.released == ["lk_test_1"]
        assert gateway.registry.active_count == 0

    async def test_failing_step_does_not_block_others(
        self, connect, gateway, fake_voice, fake_rooms, store, metrics, wait_until
    ) -> None:
        """Test a failed room release still frees the slot and ends the record."""
        fake_rooms.fail_release = RuntimeError("LiveKit unreachable")
        connection = await connect()
        await start_streaming(connection, wait_until)

        connection.stop()
        await wait_until(lambda: connection.statuses()[-1] == "idle")

        assert fake_voice.closed == ["voice_1"]
        assert gateway.registry.active_count == 0
        assert await store.list_active() == []
        assert metrics.value("teardown_errors_total") == 1

    async def test_cancelled_connection_finishes_teardown(
        self, connect, gateway, fake_voice, fake_rooms, store, wait_until
    ) -> None:
        """Test cancelling a connection mid-teardown still releases every resource."""
        fake_voice.close_delay = 0.2
        connection = await connect()
        await start_streaming(connection, wait_until)

        connection.disconnect()
        await wait_until(lambda: fake_voice.closing == ["voice_1"])
        connection.task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await connection.task

        assert fake_voice.closed == ["voice_1"]
        assert fake_rooms.released == ["lk_test_1"]
        assert gateway.registry.active_count == 0
        assert await store.list_active() == []
        assert connection.close_calls == 1
        assert gateway.connection_count == 0

    async def test_shutdown_closes_connections(
        self, connect, gateway, fake_voice, wait_until
    ) -> None:
        """Test gateway shutdown tears down live sessions."""
        connection = await connect()
        await start_streaming(connection, wait_until)

        await gateway.shutdown()
        await wait_until(lambda: gateway.connection_count == 0)

        assert connection.close_calls >= 1
        assert fake_voice.closed == ["voice_1"]
        assert gateway.registry.active_count == 0


@pytest.mark.parametrize("frames", [1, 10])
async def test_forward_audio_counts(connect, fake_voice, wait_until, frames: int) -> None:
    """Test forwarded frame count matches what was sent."""
    connection = await connect()
    await start_streaming(connection, wait_until)

    for _ in range(frames):
        connection.feed(b"\x10\x00")

    await wait_until(lambda: len(fake_voice.sent) == frames)

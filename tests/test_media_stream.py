"""
Tests for the media stream lifecycle.

Covers the IDLE -> ACTIVE -> CLOSED transitions, routing of both call tracks
to their own recognizers, transcript finalization and teardown on every
path a media connection can end.
"""

import asyncio
import json

import pytest

from conftest import (
    INBOUND,
    OUTBOUND,
    drain,
    media_frame,
    next_event,
    settle,
    start_frame,
    stop_frame,
)
from transcript_relay.media_stream import MediaStreamHandler, StreamState, serve_media_stream
from transcript_relay.speech_client import SessionState
from transcript_relay.transcript import NO_SPEECH


def started(relay, call_sid="C1"):
    handler = MediaStreamHandler(relay)
    handler.handle_message(start_frame(call_sid))
    return handler


class TestStreamStart:

    @pytest.mark.asyncio
    async def test_media_before_start_is_dropped(self, relay, backend):
        handler = MediaStreamHandler(relay)

        for _ in range(3):
            handler.handle_message(media_frame("inbound"))
        await settle()

        assert handler.state is StreamState.IDLE
        assert handler.frames_dropped == 3
        assert backend.streams == []
        assert relay.active_calls == 0

    @pytest.mark.asyncio
    async def test_start_opens_both_channels(self, relay, backend):
        handler = started(relay, "C1")

        assert handler.state is StreamState.ACTIVE
        assert handler.stream_sid == "MZ123"
        assert relay.aggregator.get("C1") is handler.session
        assert set(handler.recognizers) == {"inbound", "outbound"}
        assert all(r.state is SessionState.OPEN for r in handler.recognizers.values())
        assert len(backend.streams) == 2
        assert backend.streams[INBOUND].config.language_code == "en-US"

    @pytest.mark.asyncio
    async def test_duplicate_start_is_ignored(self, relay, backend):
        handler = started(relay, "C1")
        handler.handle_message(start_frame("C1-again"))

        assert handler.call_sid == "C1"
        assert len(backend.streams) == 2
        assert relay.aggregator.get("C1-again") is None

    @pytest.mark.asyncio
    async def test_start_without_call_sid_is_ignored(self, relay, backend):
        handler = MediaStreamHandler(relay)
        handler.handle_message(json.dumps({"event": "start", "start": {"streamSid": "MZ1"}}))

        assert handler.state is StreamState.IDLE
        assert backend.streams == []

    @pytest.mark.asyncio
    async def test_recognizer_open_failure_is_reported(self, relay, backend):
        def broken_stream(config, audio_chunks):
            raise RuntimeError("no credentials")
        backend.stream = broken_stream
        observer = relay.connect_observer()

        handler = started(relay, "C7")
        handler.handle_message(media_frame("inbound"))

        errors = [m["data"] for m in drain(observer) if m["event"] == "error"]
        assert len(errors) == 2
        assert errors[0]["callSid"] == "C7"
        assert "no credentials" in errors[0]["message"]
        assert handler.frames_dropped == 1

        handler.handle_message(stop_frame("C7"))
        assert handler.state is StreamState.CLOSED
        assert relay.active_calls == 0


class TestMediaRouting:

    @pytest.mark.asyncio
    async def test_tracks_routed_to_their_recognizer(self, relay, backend):
        handler = started(relay)

        handler.handle_message(media_frame("inbound", b"in-1"))
        handler.handle_message(media_frame("outbound", b"out-1"))
        handler.handle_message(media_frame("inbound", b"in-2"))
        await settle()

        assert backend.streams[INBOUND].received == [b"in-1", b"in-2"]
        assert backend.streams[OUTBOUND].received == [b"out-1"]
        assert handler.frames_received == 3

    @pytest.mark.asyncio
    async def test_bad_frames_do_not_disturb_the_stream(self, relay, backend):
        handler = started(relay)

        handler.handle_message("garbage")
        handler.handle_message(json.dumps({"event": "media", "media": {"track": "inbound", "payload": "%%%"}}))
        handler.handle_message(json.dumps({"event": "media", "media": {"payload": "AAAA"}}))
        handler.handle_message(json.dumps({"event": "dtmf", "dtmf": {"digit": "1"}}))
        handler.handle_message(json.dumps({"event": "mark", "mark": {"name": "m1"}}))
        handler.handle_message(media_frame("inbound", b"ok"))
        await settle()

        assert handler.state is StreamState.ACTIVE
        assert backend.streams[INBOUND].received == [b"ok"]

    @pytest.mark.asyncio
    async def test_scenario_a_final_result_is_broadcast(self, relay, backend):
        observer = relay.connect_observer()
        handler = started(relay, "C1")
        handler.handle_message(media_frame("inbound", b"yes-audio"))

        backend.streams[INBOUND].emit("yes", is_final=True)
        live = await next_event(observer, "liveTranscript")

        assert live["callSid"] == "C1"
        assert live["track"] == "inbound"
        assert live["speaker"] == "remote"
        assert live["isFinal"] is True
        assert live["fullTranscript"] == "yes "
        assert live["interimTranscript"] == ""

    @pytest.mark.asyncio
    async def test_interim_results_are_broadcast_as_overwritable_text(self, relay, backend):
        observer = relay.connect_observer()
        started(relay, "C1")

        backend.streams[OUTBOUND].emit("hel", is_final=False)
        interim = await next_event(observer, "liveTranscript")
        backend.streams[OUTBOUND].emit("hello", is_final=True)
        final = await next_event(observer, "liveTranscript")

        assert interim["isFinal"] is False
        assert interim["interimTranscript"] == "hel"
        assert interim["fullTranscript"] == ""
        assert final["fullTranscript"] == "hello "
        assert final["interimTranscript"] == ""
        assert final["speaker"] == "local"


class TestStreamStop:

    @pytest.mark.asyncio
    async def test_scenario_b_dual_channel_transcript(self, relay, backend):
        observer = relay.connect_observer()
        handler = started(relay, "C2")

        backend.streams[INBOUND].emit("hello", is_final=True)
        await next_event(observer, "liveTranscript")
        backend.streams[OUTBOUND].emit("hi there", is_final=True)
        await next_event(observer, "liveTranscript")

        handler.handle_message(stop_frame("C2"))

        record = await next_event(observer, "transcription")
        assert record["callSid"] == "C2"
        assert record["inbound"] == "hello"
        assert record["outbound"] == "hi there"
        assert record["isDualChannel"] is True
        assert relay.transcriptions.to_list() == [record]

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, relay, backend):
        handler = started(relay, "C2")
        handler.handle_message(stop_frame("C2"))
        await settle()

        assert handler.state is StreamState.CLOSED
        assert all(r.state is SessionState.CLOSED for r in handler.recognizers.values())
        assert all(stream.audio_done for stream in backend.streams)
        assert relay.active_calls == 0
        assert handler not in relay.handlers

    @pytest.mark.asyncio
    async def test_scenario_c_silent_call_not_logged(self, relay, backend):
        observer = relay.connect_observer()
        drain(observer)
        handler = started(relay, "C3")

        handler.handle_message(stop_frame("C3"))
        await settle()

        assert [m["event"] for m in drain(observer)] == []
        assert len(relay.transcriptions) == 0

    @pytest.mark.asyncio
    async def test_one_sided_call_uses_sentinel(self, relay, backend):
        observer = relay.connect_observer()
        handler = started(relay, "C4")
        backend.streams[OUTBOUND].emit("is anyone there", is_final=True)
        await next_event(observer, "liveTranscript")

        handler.handle_message(stop_frame("C4"))

        record = await next_event(observer, "transcription")
        assert record["inbound"] == NO_SPEECH
        assert record["outbound"] == "is anyone there"

    @pytest.mark.asyncio
    async def test_double_stop_produces_one_record(self, relay, backend):
        observer = relay.connect_observer()
        handler = started(relay, "C5")
        backend.streams[INBOUND].emit("once", is_final=True)
        await next_event(observer, "liveTranscript")

        handler.handle_message(stop_frame("C5"))
        handler.handle_message(stop_frame("C5"))
        handler.close_connection()
        await settle()

        records = [m for m in drain(observer) if m["event"] == "transcription"]
        assert len(records) == 1
        assert len(relay.transcriptions) == 1

    @pytest.mark.asyncio
    async def test_stop_before_start_is_tolerated(self, relay):
        handler = MediaStreamHandler(relay)
        handler.handle_message(stop_frame("C6"))
        assert handler.state is StreamState.IDLE
        assert len(relay.transcriptions) == 0

    @pytest.mark.asyncio
    async def test_results_after_stop_are_dropped(self, relay, backend):
        observer = relay.connect_observer()
        drain(observer)
        handler = started(relay, "C1")
        handler.handle_message(stop_frame("C1"))

        backend.streams[INBOUND].emit("too late", is_final=True)
        await settle()

        assert drain(observer) == []

    @pytest.mark.asyncio
    async def test_media_after_stop_is_dropped(self, relay, backend):
        handler = started(relay, "C1")
        handler.handle_message(stop_frame("C1"))
        handler.handle_message(media_frame("inbound"))

        assert handler.frames_dropped == 1
        assert handler.frames_received == 0


class TestRecognitionErrors:

    @pytest.mark.asyncio
    async def test_scenario_e_outbound_error_spares_inbound(self, relay, backend):
        observer = relay.connect_observer()
        handler = started(relay, "C8")

        backend.streams[OUTBOUND].fail(RuntimeError("stream reset"))
        error = await next_event(observer, "error")
        assert error["callSid"] == "C8"
        assert error["track"] == "outbound"
        assert "stream reset" in error["message"]

        backend.streams[INBOUND].emit("still here", is_final=True)
        live = await next_event(observer, "liveTranscript")
        assert live["track"] == "inbound"
        assert live["fullTranscript"] == "still here "

        assert handler.state is StreamState.ACTIVE
        assert handler.recognizers["outbound"].failed is True
        assert handler.recognizers["outbound"].state is SessionState.OPEN

        handler.handle_message(media_frame("outbound"))
        assert handler.frames_dropped == 1


class TestConnectionTermination:

    @pytest.mark.asyncio
    async def test_transport_close_tears_down(self, relay, backend):
        observer = relay.connect_observer()
        handler = started(relay, "C9")
        backend.streams[INBOUND].emit("cut off", is_final=True)
        await next_event(observer, "liveTranscript")

        handler.close_connection("disconnected")
        await settle()

        assert handler.state is StreamState.CLOSED
        assert all(r.state is SessionState.CLOSED for r in handler.recognizers.values())
        assert relay.active_calls == 0
        assert relay.transcriptions.to_list()[0]["inbound"] == "cut off"

    @pytest.mark.asyncio
    async def test_close_without_start(self, relay):
        handler = MediaStreamHandler(relay)
        handler.close_connection()
        assert handler.state is StreamState.CLOSED
        assert len(relay.transcriptions) == 0

    @pytest.mark.asyncio
    async def test_old_connection_leaves_replacement_alone(self, relay, backend):
        first = started(relay, "C1")
        second = started(relay, "C1")

        first.close_connection()

        assert relay.aggregator.get("C1") is second.session
        assert second.state is StreamState.ACTIVE
        assert len(relay.transcriptions) == 0

    @pytest.mark.asyncio
    async def test_shutdown_closes_open_streams(self, relay, backend):
        handler = started(relay, "C1")
        relay.shutdown()

        assert handler.state is StreamState.CLOSED
        assert relay.active_calls == 0
        assert relay.handlers == set()


class FakeWebSocket:
    def __init__(self, frames=(), hang=False):
        self.frames = list(frames)
        self.hang = hang
        self.closed = False

    async def receive(self):
        if self.frames:
            return {"type": "websocket.receive", "text": self.frames.pop(0)}
        if self.hang:
            await asyncio.Event().wait()
        return {"type": "websocket.disconnect", "code": 1000}

    async def close(self):
        self.closed = True


class TestServeMediaStream:

    @pytest.mark.asyncio
    async def test_stop_ends_the_loop(self, relay, backend):
        websocket = FakeWebSocket([start_frame("C1"), stop_frame("C1"), media_frame("inbound")])

        handler = await serve_media_stream(websocket, relay)

        assert handler.state is StreamState.CLOSED
        assert handler.frames_received == 0
        assert websocket.frames  # media after stop was never read

    @pytest.mark.asyncio
    async def test_disconnect_tears_down(self, relay, backend):
        websocket = FakeWebSocket([start_frame("C1"), media_frame("inbound")])

        handler = await serve_media_stream(websocket, relay)

        assert handler.state is StreamState.CLOSED
        assert relay.active_calls == 0

    @pytest.mark.asyncio
    async def test_idle_timeout_closes_connection(self, relay, backend):
        websocket = FakeWebSocket([start_frame("C1")], hang=True)

        handler = await serve_media_stream(websocket, relay, idle_timeout=0.05)

        assert handler.state is StreamState.CLOSED
        assert websocket.closed is True
        assert relay.active_calls == 0

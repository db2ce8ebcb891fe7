"""
Pytest configuration and fixtures for the transcript relay tests.
"""

import asyncio
import base64
import json

import pytest

from transcript_relay.speech_client import RecognitionBackend, RecognitionResult
from transcript_relay.state import RelayState

# Streams are opened in track order: inbound first, then outbound
INBOUND = 0
OUTBOUND = 1


class FakeStream:
    """Scripted recognition stream: tests push results, audio is collected."""

    def __init__(self, config, audio_chunks):
        self.config = config
        self.received = []
        self.audio_done = False
        self._results = asyncio.Queue()
        self._collector = asyncio.get_running_loop().create_task(self._collect(audio_chunks))

    async def _collect(self, audio_chunks):
        async for chunk in audio_chunks:
            self.received.append(chunk)
        self.audio_done = True

    def emit(self, transcript, is_final=True):
        self._results.put_nowait(RecognitionResult(transcript=transcript, is_final=is_final))

    def fail(self, error):
        self._results.put_nowait(error)

    def end(self):
        self._results.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._results.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeBackend(RecognitionBackend):
    def __init__(self):
        self.streams = []

    def stream(self, config, audio_chunks):
        stream = FakeStream(config, audio_chunks)
        self.streams.append(stream)
        return stream


class EchoBackend(RecognitionBackend):
    """Finalizes every audio chunk as its own text; used through the HTTP app."""

    async def stream(self, config, audio_chunks):
        async for chunk in audio_chunks:
            yield RecognitionResult(transcript=chunk.decode("utf-8"), is_final=True)


async def settle(rounds: int = 10):
    """Let background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def next_event(observer, name, timeout: float = 1.0):
    """Wait for the next broadcast named ``name``, skipping others."""
    async def _wait():
        while True:
            message = await observer.next_message()
            if message["event"] == name:
                return message["data"]
    return await asyncio.wait_for(_wait(), timeout)


def drain(observer):
    """All messages currently queued for an observer."""
    messages = []
    while not observer.queue.empty():
        messages.append(observer.queue.get_nowait())
    return messages


def start_frame(call_sid, stream_sid="MZ123"):
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "start": {
            "callSid": call_sid,
            "streamSid": stream_sid,
            "tracks": ["inbound", "outbound"],
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
        },
        "streamSid": stream_sid,
    })


def media_frame(track, audio=b"\xff\x7f\xff\x7f", stream_sid="MZ123"):
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "track": track,
            "chunk": "1",
            "timestamp": "20",
            "payload": base64.b64encode(audio).decode("ascii"),
        },
    })


def stop_frame(call_sid="C1", stream_sid="MZ123"):
    return json.dumps({
        "event": "stop",
        "streamSid": stream_sid,
        "stop": {"callSid": call_sid, "accountSid": "AC123"},
    })


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def relay(backend):
    return RelayState(backend=backend, language_code="en-US", history_limit=50)

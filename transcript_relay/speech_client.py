"""
Streaming speech recognition per call channel.

Each (call, track) pair gets its own ChannelRecognitionSession holding one
long-lived streaming request to the recognition backend. Audio is queued
without blocking the media handler; a background task feeds the backend and
dispatches results to the session callbacks in the order they arrive.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional

import structlog

logger = structlog.get_logger()

ResultCallback = Callable[[str, str, bool], None]
ErrorCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    is_final: bool


@dataclass(frozen=True)
class StreamConfig:
    """Static recognition settings sent once at the start of a stream."""
    language_code: str
    encoding: str = "MULAW"
    sample_rate_hertz: int = 8000
    enable_automatic_punctuation: bool = True
    interim_results: bool = True
    model: Optional[str] = None
    use_enhanced: bool = False


def is_english(language_code: str) -> bool:
    return language_code.replace("_", "-").split("-")[0].lower() == "en"


def build_stream_config(language_code: str) -> StreamConfig:
    """
    Recognition config for 8kHz mu-law telephony audio.

    The phone_call model and enhanced tier only exist for English; the backend
    rejects them for any other language, so those use the default model.
    """
    if is_english(language_code):
        return StreamConfig(language_code=language_code, model="phone_call", use_enhanced=True)
    return StreamConfig(language_code=language_code)


class RecognitionBackend(ABC):
    """Bidirectional streaming recognizer."""

    @abstractmethod
    def stream(
        self, config: StreamConfig, audio_chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[RecognitionResult]:
        """Consume audio chunks and yield results in backend order.

        Must not block: the returned iterator connects lazily on first use.
        """


class GoogleSpeechBackend(RecognitionBackend):
    """Google Cloud Speech-to-Text over the async gRPC client."""

    def __init__(self, client=None):
        self._client = client

    def _get_client(self):
        if self._client is None:
            from google.cloud import speech
            self._client = speech.SpeechAsyncClient()
        return self._client

    @staticmethod
    def _to_streaming_config(config: StreamConfig):
        from google.cloud import speech

        kwargs = dict(
            encoding=speech.RecognitionConfig.AudioEncoding[config.encoding],
            sample_rate_hertz=config.sample_rate_hertz,
            language_code=config.language_code,
            enable_automatic_punctuation=config.enable_automatic_punctuation,
        )
        if config.model:
            kwargs["model"] = config.model
            kwargs["use_enhanced"] = config.use_enhanced

        return speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(**kwargs),
            interim_results=config.interim_results,
        )

    async def stream(self, config, audio_chunks):
        from google.cloud import speech

        streaming_config = self._to_streaming_config(config)

        async def requests():
            # First request carries the config, the rest carry audio
            yield speech.StreamingRecognizeRequest(streaming_config=streaming_config)
            async for chunk in audio_chunks:
                yield speech.StreamingRecognizeRequest(audio_content=chunk)

        responses = await self._get_client().streaming_recognize(requests=requests())
        async for response in responses:
            if not response.results:
                continue
            result = response.results[0]
            if not result.alternatives:
                continue
            yield RecognitionResult(
                transcript=result.alternatives[0].transcript,
                is_final=result.is_final,
            )


class SessionState(Enum):
    UNOPENED = "unopened"
    OPEN = "open"
    CLOSED = "closed"


class ChannelRecognitionSession:
    """
    One streaming recognition request for one channel of one call.

    Only the media stream handler that created a session closes it. Backend
    failures mark the session failed: further writes are dropped, the error
    is reported once through on_error, and the other channel is unaffected.
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        call_sid: str,
        track: str,
        language_code: str,
        on_result: ResultCallback,
        on_error: ErrorCallback,
        max_pending_chunks: int = 500,
    ):
        self.backend = backend
        self.call_sid = call_sid
        self.track = track
        self.config = build_stream_config(language_code)
        self.on_result = on_result
        self.on_error = on_error
        self.max_pending_chunks = max_pending_chunks

        self.state = SessionState.UNOPENED
        self.failed = False
        self.chunks_written = 0
        self.chunks_dropped = 0

        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def open(self):
        """Start the streaming request in the background. Requires a running loop."""
        if self.state is not SessionState.UNOPENED:
            logger.warning("recognition.open_ignored",
                           call_sid=self.call_sid, track=self.track, state=self.state.value)
            return

        self._queue = asyncio.Queue(maxsize=self.max_pending_chunks)
        results = self.backend.stream(self.config, self._audio_chunks())
        self._task = asyncio.create_task(self._consume(results))
        self.state = SessionState.OPEN

        logger.info("recognition.opened",
                    call_sid=self.call_sid,
                    track=self.track,
                    language=self.config.language_code,
                    model=self.config.model or "default")

    def write(self, chunk: bytes) -> bool:
        """Queue one audio buffer. Returns False if it was dropped."""
        if not self.is_open or self.failed:
            self.chunks_dropped += 1
            logger.debug("recognition.write_dropped",
                         call_sid=self.call_sid, track=self.track,
                         state=self.state.value, failed=self.failed)
            return False

        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.chunks_dropped += 1
            logger.warning("recognition.queue_full", call_sid=self.call_sid, track=self.track)
            return False

        self.chunks_written += 1
        return True

    def close(self):
        """Signal end of audio and stop delivering results. Safe to call repeatedly."""
        if self.state is SessionState.CLOSED:
            return

        was_open = self.state is SessionState.OPEN
        self.state = SessionState.CLOSED

        if was_open:
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            if self._task and not self._task.done():
                self._task.cancel()

        logger.info("recognition.closed",
                    call_sid=self.call_sid,
                    track=self.track,
                    chunks_written=self.chunks_written,
                    chunks_dropped=self.chunks_dropped)

    async def _audio_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def _consume(self, results: AsyncIterator[RecognitionResult]):
        try:
            async for result in results:
                if self.state is SessionState.CLOSED:
                    break
                transcript = result.transcript or ""
                if not transcript.strip():
                    continue
                logger.debug("recognition.result",
                             call_sid=self.call_sid, track=self.track,
                             is_final=result.is_final, transcript=transcript)
                self.on_result(self.track, transcript, result.is_final)
            if self.state is SessionState.OPEN:
                # Backend closed the stream on its own; later audio has nowhere to go
                self.failed = True
                logger.warning("recognition.stream_ended", call_sid=self.call_sid, track=self.track)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed = True
            logger.error("recognition.error",
                         call_sid=self.call_sid, track=self.track, error=str(e))
            if self.state is not SessionState.CLOSED:
                self.on_error(self.track, f"Speech recognition error: {e}")

"""
Twilio media stream handling.

One MediaStreamHandler per media WebSocket. It moves IDLE -> ACTIVE on
``start``, routes ``media`` frames to the per-track recognizers while ACTIVE,
and moves to CLOSED on ``stop`` or when the transport goes away. Teardown
always closes both recognizers and removes the call from the registry.
"""

import asyncio
from enum import Enum
from typing import Dict, Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from .audio import (
    TRACK_SPEAKERS,
    MalformedEventError,
    decode_media_frame,
    parse_media_message,
    parse_start_event,
)
from .speech_client import ChannelRecognitionSession
from .state import RelayState
from .transcript import CallSession

logger = structlog.get_logger()


class StreamState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    CLOSED = "closed"


class MediaStreamHandler:
    """Lifecycle of one call's media connection."""

    def __init__(self, relay: RelayState):
        self.relay = relay
        self.state = StreamState.IDLE
        self.call_sid: Optional[str] = None
        self.stream_sid: Optional[str] = None
        self.session: Optional[CallSession] = None
        self.recognizers: Dict[str, ChannelRecognitionSession] = {}
        self.frames_received = 0
        self.frames_dropped = 0

    def handle_message(self, raw) -> None:
        """Process one text frame. Never raises."""
        try:
            message = parse_media_message(raw)
            event = message["event"]

            if event == "start":
                self._on_start(message)
            elif event == "media":
                self._on_media(message)
            elif event == "stop":
                self._on_stop()
            elif event in ("connected", "mark"):
                logger.debug("media_stream.event", event=event, call_sid=self.call_sid)
            else:
                logger.info("media_stream.unknown_event", event=event, call_sid=self.call_sid)
        except MalformedEventError as e:
            logger.warning("media_stream.malformed_event", call_sid=self.call_sid, error=str(e))
        except Exception as e:
            logger.error("media_stream.handler_error",
                         call_sid=self.call_sid, error=str(e), exc_info=True)

    def _on_start(self, message: dict):
        if self.state is not StreamState.IDLE:
            logger.warning("media_stream.duplicate_start",
                           call_sid=self.call_sid, state=self.state.value)
            return

        start = parse_start_event(message)
        self.call_sid = start.call_sid
        self.stream_sid = start.stream_sid
        self.session = self.relay.aggregator.begin(start.call_sid, start.stream_sid)
        self.state = StreamState.ACTIVE
        self.relay.register_handler(self)

        logger.info("media_stream.started", call_sid=self.call_sid, stream_sid=self.stream_sid)

        session = self.session
        for track in TRACK_SPEAKERS:
            recognizer = ChannelRecognitionSession(
                backend=self.relay.backend,
                call_sid=self.call_sid,
                track=track,
                language_code=self.relay.language_code,
                on_result=lambda tr, text, is_final: self.relay.aggregator.on_result(
                    session, tr, text, is_final
                ),
                on_error=self._on_recognition_error,
                max_pending_chunks=self.relay.audio_queue_size,
            )
            self.recognizers[track] = recognizer
            try:
                recognizer.open()
            except Exception as e:
                logger.error("media_stream.recognizer_open_failed",
                             call_sid=self.call_sid, track=track, error=str(e))
                self.relay.report_error(
                    self.call_sid, track, f"Failed to start speech recognition: {e}"
                )

    def _on_media(self, message: dict):
        if self.state is not StreamState.ACTIVE:
            self.frames_dropped += 1
            logger.debug("media_stream.media_outside_call", state=self.state.value)
            return

        frame = decode_media_frame(message)
        self.frames_received += 1

        recognizer = self.recognizers.get(frame.track)
        if recognizer is None or not recognizer.is_open:
            self.frames_dropped += 1
            return
        if not recognizer.write(frame.payload):
            self.frames_dropped += 1

    def _on_stop(self):
        if self.state is not StreamState.ACTIVE:
            logger.info("media_stream.stop_ignored", call_sid=self.call_sid, state=self.state.value)
            return
        logger.info("media_stream.stopped", call_sid=self.call_sid)
        self._teardown(finalize=True)

    def _on_recognition_error(self, track: str, message: str):
        if self.state is not StreamState.ACTIVE:
            return
        self.relay.report_error(self.call_sid, track, message)

    def close_connection(self, reason: str = "closed"):
        """Transport ended (disconnect, error, timeout or shutdown)."""
        if self.state is StreamState.CLOSED:
            return
        logger.info("media_stream.connection_closed", call_sid=self.call_sid, reason=reason)
        self._teardown(finalize=self.state is StreamState.ACTIVE)

    def _teardown(self, finalize: bool):
        try:
            if finalize and self.session is not None:
                self.relay.aggregator.finalize(self.session)
        finally:
            for recognizer in self.recognizers.values():
                recognizer.close()
            if self.session is not None:
                self.relay.aggregator.discard(self.session.call_sid, self.session)
            self.state = StreamState.CLOSED
            self.relay.unregister_handler(self)

            logger.info("media_stream.teardown",
                        call_sid=self.call_sid,
                        frames_received=self.frames_received,
                        frames_dropped=self.frames_dropped)


async def serve_media_stream(websocket: WebSocket, relay: RelayState, idle_timeout: float = 0):
    """Receive loop for one accepted media WebSocket."""
    handler = MediaStreamHandler(relay)
    reason = "disconnected"

    try:
        while True:
            if idle_timeout and idle_timeout > 0:
                message = await asyncio.wait_for(websocket.receive(), timeout=idle_timeout)
            else:
                message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            handler.handle_message(raw)

            if handler.state is StreamState.CLOSED:
                reason = "stopped"
                break
    except WebSocketDisconnect:
        pass
    except asyncio.TimeoutError:
        reason = "idle_timeout"
        logger.warning("media_stream.idle_timeout", call_sid=handler.call_sid, timeout=idle_timeout)
        try:
            await websocket.close()
        except Exception as e:
            logger.debug("media_stream.close_failed", error=str(e))
    except Exception as e:
        reason = "error"
        logger.error("media_stream.transport_error", call_sid=handler.call_sid, error=str(e))
    finally:
        handler.close_connection(reason)

    return handler

"""Process-scoped relay state, created in the app lifespan and injected into handlers."""

from typing import Any, Dict, Optional, Set, TYPE_CHECKING

import structlog

from .broadcast import BroadcastSink, HistoryLog, Observer
from .speech_client import RecognitionBackend
from .transcript import CallTranscriptAggregator, NO_SPEECH, utc_now

if TYPE_CHECKING:
    from .media_stream import MediaStreamHandler

logger = structlog.get_logger()


class RelayState:
    """
    Owns everything shared between connections: the live call registry,
    the bounded call and transcription histories, the dashboard fan-out and
    the recognition backend.
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        language_code: str,
        history_limit: int = 50,
        audio_queue_size: int = 500,
        observer_queue_size: int = 256,
    ):
        self.backend = backend
        self.language_code = language_code
        self.audio_queue_size = audio_queue_size

        self.broadcaster = BroadcastSink(max_pending=observer_queue_size)
        self.calls = HistoryLog(history_limit)
        self.transcriptions = HistoryLog(history_limit)
        self.aggregator = CallTranscriptAggregator(self.broadcaster, self.transcriptions)
        self.handlers: Set["MediaStreamHandler"] = set()

    @classmethod
    def from_config(cls, config, backend: RecognitionBackend) -> "RelayState":
        return cls(
            backend=backend,
            language_code=config.language_code,
            history_limit=config.history_limit,
            audio_queue_size=config.audio_queue_size,
            observer_queue_size=config.observer_queue_size,
        )

    @property
    def active_calls(self) -> int:
        return len(self.aggregator.sessions)

    def snapshot(self) -> Dict[str, Any]:
        """Committed history only; in-flight transcripts are not part of it."""
        return {
            "calls": self.calls.to_list(),
            "transcriptions": self.transcriptions.to_list(),
        }

    def connect_observer(self) -> Observer:
        return self.broadcaster.subscribe(self.snapshot())

    def disconnect_observer(self, observer: Observer):
        self.broadcaster.unsubscribe(observer)

    def report_error(self, call_sid: str, track: Optional[str], message: str):
        self.broadcaster.publish("error", {
            "callSid": call_sid,
            "track": track,
            "message": message,
        })

    def record_call_status(
        self,
        call_sid: str,
        status: Optional[str],
        from_: Optional[str] = None,
        to: Optional[str] = None,
        direction: Optional[str] = None,
        duration: Optional[str] = None,
    ) -> Dict[str, Any]:
        update = {
            "callSid": call_sid,
            "status": status,
            "from": from_,
            "to": to,
            "direction": direction,
            "duration": duration,
            "timestamp": utc_now(),
        }
        # Later callbacks omit fields sent earlier; keep what we already know
        update = {k: v for k, v in update.items() if v is not None}
        self.calls.upsert("callSid", update)

        logger.info("call_status.updated", call_sid=call_sid, status=status, from_=from_, to=to)
        self.broadcaster.publish("callStatus", update)
        return update

    def record_transcription(
        self,
        call_sid: str,
        text: Optional[str],
        status: Optional[str],
        recording_sid: Optional[str] = None,
        recording_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        transcription = {
            "callSid": call_sid,
            "recordingSid": recording_sid,
            "text": text or NO_SPEECH,
            "status": status,
            "recordingUrl": recording_url,
            "timestamp": utc_now(),
        }
        self.transcriptions.add(transcription)

        logger.info("transcription.received",
                    call_sid=call_sid, recording_sid=recording_sid, status=status)
        self.broadcaster.publish("transcription", transcription)
        return transcription

    def register_handler(self, handler: "MediaStreamHandler"):
        self.handlers.add(handler)

    def unregister_handler(self, handler: "MediaStreamHandler"):
        self.handlers.discard(handler)

    def shutdown(self):
        """Tear down every open media stream and drop all state."""
        for handler in list(self.handlers):
            handler.close_connection("shutdown")
        self.handlers.clear()
        self.aggregator.clear()
        self.calls.clear()
        self.transcriptions.clear()
        self.broadcaster.close()
        logger.info("relay.shutdown")

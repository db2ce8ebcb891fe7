"""Per-call transcript state merged from the two channel recognizers."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from .audio import TRACK_SPEAKERS
from .broadcast import BroadcastSink, HistoryLog

logger = structlog.get_logger()

NO_SPEECH = "(No speech detected)"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ChannelState:
    track: str
    speaker: str
    committed: str = ""
    interim: str = ""

    def apply(self, transcript: str, is_final: bool):
        if is_final:
            self.committed += transcript + " "
            self.interim = ""
        else:
            self.interim = transcript


@dataclass
class CallSession:
    call_sid: str
    stream_sid: Optional[str] = None
    channels: Dict[str, ChannelState] = field(default_factory=lambda: {
        track: ChannelState(track=track, speaker=speaker)
        for track, speaker in TRACK_SPEAKERS.items()
    })
    last_update: str = field(default_factory=utc_now)

    def apply_result(self, track: str, transcript: str, is_final: bool) -> ChannelState:
        channel = self.channels[track]
        channel.apply(transcript, is_final)
        self.last_update = utc_now()
        return channel


@dataclass(frozen=True)
class TranscriptRecord:
    call_sid: str
    inbound: str
    outbound: str
    status: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "callSid": self.call_sid,
            "inbound": self.inbound,
            "outbound": self.outbound,
            "status": self.status,
            "timestamp": self.timestamp,
            "isRealTime": True,
            "isDualChannel": True,
        }


def build_record(session: CallSession) -> Optional[TranscriptRecord]:
    """Snapshot a finished call, or None if neither side said anything."""
    inbound = session.channels["inbound"].committed.strip()
    outbound = session.channels["outbound"].committed.strip()
    if not inbound and not outbound:
        return None
    return TranscriptRecord(
        call_sid=session.call_sid,
        inbound=inbound or NO_SPEECH,
        outbound=outbound or NO_SPEECH,
        status="completed",
        timestamp=utc_now(),
    )


class CallTranscriptAggregator:
    """
    Owns the live CallSession registry.

    Recognition results update the matching channel and are broadcast as
    ``liveTranscript`` with both committed and interim text, so dashboards can
    render overwritable partial text distinctly from committed text.
    """

    def __init__(self, broadcaster: BroadcastSink, transcriptions: HistoryLog):
        self.broadcaster = broadcaster
        self.transcriptions = transcriptions
        self.sessions: Dict[str, CallSession] = {}

    def begin(self, call_sid: str, stream_sid: Optional[str] = None) -> CallSession:
        if call_sid in self.sessions:
            logger.warning("transcript.session_replaced", call_sid=call_sid)
        session = CallSession(call_sid=call_sid, stream_sid=stream_sid)
        self.sessions[call_sid] = session
        return session

    def get(self, call_sid: str) -> Optional[CallSession]:
        return self.sessions.get(call_sid)

    def on_result(self, session: CallSession, track: str, transcript: str, is_final: bool):
        call_sid = session.call_sid
        if self.sessions.get(call_sid) is not session:
            logger.debug("transcript.result_without_session", call_sid=call_sid, track=track)
            return

        channel = session.apply_result(track, transcript, is_final)
        logger.info("transcript.final" if is_final else "transcript.interim",
                    call_sid=call_sid, track=track, transcript=transcript)

        self.broadcaster.publish("liveTranscript", {
            "callSid": call_sid,
            "track": track,
            "speaker": channel.speaker,
            "transcript": transcript,
            "isFinal": is_final,
            "fullTranscript": channel.committed,
            "interimTranscript": channel.interim,
            "timestamp": session.last_update,
        })

    def finalize(self, session: CallSession) -> Optional[TranscriptRecord]:
        """Emit the call's transcript record; silent calls produce nothing.

        Only a session still registered is finalized, so a record is produced
        at most once per call.
        """
        call_sid = session.call_sid
        if self.sessions.get(call_sid) is not session:
            logger.info("transcript.finalize_without_session", call_sid=call_sid)
            return None

        record = build_record(session)
        if record is None:
            logger.info("transcript.no_speech", call_sid=call_sid)
            return None

        payload = record.to_dict()
        self.transcriptions.add(payload)
        self.broadcaster.publish("transcription", payload)
        logger.info("transcript.completed",
                    call_sid=call_sid,
                    inbound_chars=len(record.inbound),
                    outbound_chars=len(record.outbound))
        return record

    def discard(self, call_sid: str, session: Optional[CallSession] = None) -> bool:
        """Remove a call from the registry, only if it is still ``session`` when given."""
        current = self.sessions.get(call_sid)
        if current is None:
            return False
        if session is not None and current is not session:
            return False
        del self.sessions[call_sid]
        return True

    def clear(self):
        self.sessions.clear()

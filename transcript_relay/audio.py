"""
Twilio media stream frame decoding.

Twilio sends JSON text frames over the media WebSocket. Audio arrives in
``media`` events as base64 8kHz mu-law, tagged with the track it was
captured on.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

# Twilio track label -> speaker role
TRACK_SPEAKERS = {
    "inbound": "remote",
    "outbound": "local",
}


class MalformedEventError(ValueError):
    """Raised when a media stream frame cannot be interpreted."""


@dataclass(frozen=True)
class AudioFrame:
    track: str
    speaker: str
    payload: bytes


@dataclass(frozen=True)
class StreamStart:
    call_sid: str
    stream_sid: Optional[str]


def parse_media_message(raw: Any) -> Dict[str, Any]:
    """Decode one text frame into an event dict."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"Invalid JSON frame: {e}") from e

    if not isinstance(message, dict):
        raise MalformedEventError("Frame is not a JSON object")
    if not isinstance(message.get("event"), str):
        raise MalformedEventError("Frame has no event type")
    return message


def parse_start_event(message: Dict[str, Any]) -> StreamStart:
    """Extract call and stream identifiers from a ``start`` event."""
    start = message.get("start")
    if not isinstance(start, dict):
        raise MalformedEventError("start event has no start block")

    call_sid = start.get("callSid")
    if not call_sid or not isinstance(call_sid, str):
        raise MalformedEventError("start event has no callSid")

    stream_sid = start.get("streamSid") or message.get("streamSid")
    return StreamStart(call_sid=call_sid, stream_sid=stream_sid)


def decode_media_frame(message: Dict[str, Any]) -> AudioFrame:
    """
    Decode the audio carried by a ``media`` event.

    Raises:
        MalformedEventError: payload missing or not base64, track absent or unknown
    """
    media = message.get("media")
    if not isinstance(media, dict):
        raise MalformedEventError("media event has no media block")

    track = media.get("track")
    if not track:
        raise MalformedEventError("media event has no track label")
    speaker = TRACK_SPEAKERS.get(track)
    if speaker is None:
        raise MalformedEventError(f"Unknown track label: {track}")

    payload = media.get("payload")
    if not payload or not isinstance(payload, str):
        raise MalformedEventError("media event has no payload")

    try:
        audio = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedEventError(f"Payload is not valid base64: {e}") from e

    if not audio:
        raise MalformedEventError("media payload decoded to zero bytes")

    return AudioFrame(track=track, speaker=speaker, payload=audio)

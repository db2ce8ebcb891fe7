import structlog
from typing import Any, Mapping, Optional
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Start, VoiceResponse

from .base import TelephonyProvider
from .models import Call, CallStatus, StatusCallback, TranscriptionCallback

logger = structlog.get_logger()

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]
GOODBYE = "Thank you for testing. Goodbye!"


class WebhookError(ValueError):
    """Raised when a Twilio webhook lacks required fields."""


class TwilioProvider(TelephonyProvider):
    """Twilio provider implementation."""

    def __init__(
        self,
        account_sid: str = "",
        auth_token: str = "",
        from_number: str = "",
        media_stream_url: str = "",
        status_callback_url: str = "",
        greeting: str = "",
        listen_seconds: int = 60,
        client: Optional[Any] = None,
    ):
        """Initialize TwilioProvider.

        The REST client is created on first use, so webhook parsing works
        without credentials.

        Args:
            account_sid: Twilio account SID
            auth_token: Twilio auth token
            from_number: Caller ID for outbound calls (E.164)
            media_stream_url: wss:// URL Twilio streams both call tracks to
            status_callback_url: URL receiving call status webhooks
            greeting: Text spoken when the call is answered
            listen_seconds: How long the call stays open for speech
            client: Preconfigured Twilio REST client
        """
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.media_stream_url = media_stream_url
        self.status_callback_url = status_callback_url
        self.greeting = greeting
        self.listen_seconds = listen_seconds
        self._client = client

    @classmethod
    def from_config(cls, config) -> "TwilioProvider":
        return cls(
            account_sid=config.twilio_account_sid,
            auth_token=config.twilio_auth_token,
            from_number=config.twilio_phone_number,
            media_stream_url=config.media_stream_url,
            status_callback_url=config.status_callback_url,
            greeting=config.call_greeting,
            listen_seconds=config.call_listen_seconds,
        )

    @property
    def client(self):
        if self._client is None:
            if not self.account_sid or not self.auth_token:
                raise ValueError("Twilio account_sid and auth_token are required")
            self._client = TwilioClient(self.account_sid, self.auth_token)
        return self._client

    def build_twiml(self) -> str:
        """TwiML that forks both call tracks to the media stream, then listens."""
        response = VoiceResponse()
        start = Start()
        start.stream(url=self.media_stream_url, track="both_tracks")
        response.append(start)
        if self.greeting:
            response.say(self.greeting)
        response.pause(length=self.listen_seconds)
        response.say(GOODBYE)
        return str(response)

    def start_outbound_call(self, to: str) -> Call:
        """Originate a call whose audio is streamed back to this service."""
        if not self._is_valid_e164(to):
            raise ValueError(f"Invalid destination number format: {to}. Expected E.164 format (e.g., +1...)")
        if not self._is_valid_e164(self.from_number):
            raise ValueError(f"Invalid from_number format: {self.from_number}. Expected E.164 format (e.g., +1...)")

        logger.info("TwilioProvider.dial", to=to[:5] + "*****", stream_url=self.media_stream_url)

        try:
            call = self.client.calls.create(
                to=to,
                from_=self.from_number,
                twiml=self.build_twiml(),
                status_callback=self.status_callback_url,
                status_callback_event=STATUS_CALLBACK_EVENTS,
            )
        except Exception as e:
            logger.error("TwilioProvider.dial.failed", error=str(e))
            raise

        logger.info("TwilioProvider.dial.success", call_id=call.sid, status=call.status)
        return Call(
            id=call.sid,
            to=to,
            from_=self.from_number,
            status=CallStatus.parse(call.status),
            provider=self.get_provider_name(),
        )

    def parse_status_webhook(self, form: Mapping[str, str]) -> StatusCallback:
        call_sid = form.get("CallSid")
        if not call_sid:
            raise WebhookError("Missing CallSid")
        return StatusCallback(
            call_sid=call_sid,
            status=form.get("CallStatus"),
            from_=form.get("From"),
            to=form.get("To"),
            direction=form.get("Direction"),
            duration=form.get("CallDuration") or form.get("Duration"),
        )

    def parse_transcription_webhook(self, form: Mapping[str, str]) -> TranscriptionCallback:
        call_sid = form.get("CallSid")
        if not call_sid:
            raise WebhookError("Missing CallSid")
        return TranscriptionCallback(
            call_sid=call_sid,
            text=form.get("TranscriptionText"),
            status=form.get("TranscriptionStatus"),
            recording_sid=form.get("RecordingSid"),
            recording_url=form.get("RecordingUrl"),
        )

    def _is_valid_e164(self, phone_number: str) -> bool:
        """Validate if phone number is in E.164 format (+country_code...)."""
        if not phone_number or not phone_number.startswith('+'):
            return False
        return phone_number[1:].isdigit()

    def get_provider_name(self) -> str:
        return "twilio"

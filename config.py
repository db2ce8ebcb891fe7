"""Call transcript relay configuration from environment variables."""

import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    # Server
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "3000")))

    # Google Cloud Speech (credentials come from GOOGLE_APPLICATION_CREDENTIALS)
    language_code: str = field(default_factory=lambda: os.getenv("LANGUAGE_CODE", "ar-SA"))

    # Relay limits
    history_limit: int = field(default_factory=lambda: int(os.getenv("HISTORY_LIMIT", "50")))
    stream_idle_timeout: float = field(default_factory=lambda: float(os.getenv("STREAM_IDLE_TIMEOUT", "0")))
    audio_queue_size: int = field(default_factory=lambda: int(os.getenv("AUDIO_QUEUE_SIZE", "500")))
    observer_queue_size: int = field(default_factory=lambda: int(os.getenv("OBSERVER_QUEUE_SIZE", "256")))

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Twilio PSTN
    twilio_account_sid: str = field(default_factory=lambda: os.getenv("TWILIO_ACCOUNT_SID", ""))
    twilio_auth_token: str = field(default_factory=lambda: os.getenv("TWILIO_AUTH_TOKEN", ""))
    twilio_phone_number: str = field(default_factory=lambda: os.getenv("TWILIO_PHONE_NUMBER", ""))
    webhook_base_url: str = field(default_factory=lambda: os.getenv("WEBHOOK_BASE_URL", ""))

    # Outbound call script
    call_listen_seconds: int = field(default_factory=lambda: int(os.getenv("CALL_LISTEN_SECONDS", "60")))
    call_greeting: str = field(default_factory=lambda: os.getenv(
        "CALL_GREETING",
        "Hello! This is a test call with real-time transcription. Please speak now.",
    ))

    @property
    def media_stream_url(self) -> str:
        """WebSocket URL Twilio streams call audio to."""
        if self.webhook_base_url:
            scheme = "wss" if self.webhook_base_url.startswith("https") else "ws"
            host = self.webhook_base_url.replace("https://", "").replace("http://", "").rstrip("/")
            return f"{scheme}://{host}/media-stream"
        return f"ws://localhost:{self.port}/media-stream"

    @property
    def status_callback_url(self) -> str:
        return f"{self.webhook_base_url.rstrip('/')}/status"

    def validate(self) -> list[str]:
        """Return list of missing config values required to place calls."""
        missing = []
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.twilio_phone_number:
            missing.append("TWILIO_PHONE_NUMBER")
        if not self.webhook_base_url:
            missing.append("WEBHOOK_BASE_URL")
        return missing


config = Config()

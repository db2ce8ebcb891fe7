from .base import TelephonyProvider
from .models import Call, CallStatus, StatusCallback, TranscriptionCallback
from .twilio_provider import TwilioProvider, WebhookError

__all__ = [
    'TelephonyProvider', 'Call', 'CallStatus', 'StatusCallback', 'TranscriptionCallback',
    'TwilioProvider', 'WebhookError',
]

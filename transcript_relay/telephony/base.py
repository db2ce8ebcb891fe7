from abc import ABC, abstractmethod
from typing import Mapping

from .models import Call, StatusCallback, TranscriptionCallback


class TelephonyProvider(ABC):
    """Abstract base for telephony providers"""

    @abstractmethod
    def start_outbound_call(self, to: str) -> Call: pass

    @abstractmethod
    def parse_status_webhook(self, form: Mapping[str, str]) -> StatusCallback: pass

    @abstractmethod
    def parse_transcription_webhook(self, form: Mapping[str, str]) -> TranscriptionCallback: pass

    @abstractmethod
    def get_provider_name(self) -> str: pass

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CallStatus(Enum):
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CallStatus":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in (
            CallStatus.COMPLETED,
            CallStatus.BUSY,
            CallStatus.FAILED,
            CallStatus.NO_ANSWER,
            CallStatus.CANCELED,
        )


@dataclass
class Call:
    id: str
    to: str
    from_: str
    status: CallStatus
    provider: str


@dataclass
class StatusCallback:
    call_sid: str
    status: Optional[str]
    from_: Optional[str] = None
    to: Optional[str] = None
    direction: Optional[str] = None
    duration: Optional[str] = None

    @property
    def call_status(self) -> CallStatus:
        return CallStatus.parse(self.status)


@dataclass
class TranscriptionCallback:
    call_sid: str
    text: Optional[str]
    status: Optional[str]
    recording_sid: Optional[str] = None
    recording_url: Optional[str] = None

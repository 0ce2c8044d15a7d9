"""
Core data models for the OTP voice caller.
These are the universal types shared across all modules.

Python attributes are snake_case; JSON leaving the service (REST responses,
WebSocket events) uses the camelCase aliases.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_call_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    ANSWERED = "answered"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    UNANSWERED = "unanswered"
    BUSY = "busy"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position on the happy path; terminal states share the top rank."""
        return _STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.REJECTED,
    CallStatus.UNANSWERED, CallStatus.BUSY,
})

_STATUS_RANK = {
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.ANSWERED: 3,
    CallStatus.COMPLETED: 4,
    CallStatus.FAILED: 4,
    CallStatus.REJECTED: 4,
    CallStatus.UNANSWERED: 4,
    CallStatus.BUSY: 4,
}


class EventType(str, Enum):
    """Notification types pushed to real-time subscribers."""
    CONNECTED = "connected"
    PONG = "pong"
    CALL_INITIATED = "call_initiated"
    CALL_ANSWERED = "call_answered"
    CALL_EVENT = "call_event"
    DTMF_RECEIVED = "dtmf_received"
    TRANSCRIPT_ADDED = "transcript_added"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────
#  CallRecord: one per outbound attempt
# ──────────────────────────────────────────────────────────────

class CallRecord(_CamelModel):
    id: str = Field(default_factory=new_call_id)
    provider_call_id: Optional[str] = None        # assigned after initiation
    phone_number: str
    otp_code: str
    language: str = "en-US"
    transfer_number: Optional[str] = None
    status: CallStatus = CallStatus.INITIATED
    dtmf_input: Optional[str] = None
    dtmf_attempts: int = 0
    dtmf_event_key: Optional[str] = None          # last applied input webhook
    verified: bool = False
    recording_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    answered_at: Optional[datetime] = None
    dtmf_received_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: Optional[int] = None                # seconds, terminal "completed" only

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def public_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CallPatch(BaseModel):
    """
    Typed partial update for a CallRecord.

    Only explicitly set fields are written, so two handlers touching
    different fields of the same record never clobber each other.
    Immutable inputs (phone number, OTP, language, transfer number) are
    absent.
    """
    provider_call_id: Optional[str] = None
    status: Optional[CallStatus] = None
    dtmf_input: Optional[str] = None
    dtmf_attempts: Optional[int] = None
    dtmf_event_key: Optional[str] = None
    verified: Optional[bool] = None
    recording_url: Optional[str] = None
    answered_at: Optional[datetime] = None
    dtmf_received_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: Optional[int] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def __bool__(self) -> bool:
        return bool(self.model_fields_set)


def apply_patch(call: CallRecord, patch: CallPatch) -> CallRecord:
    """
    Return a copy of ``call`` with ``patch`` applied.

    A terminal status is absorbing: a patch never moves a call out of a
    terminal state, although its other fields are still written.
    """
    changes = patch.changes()
    if "status" in changes and call.is_terminal:
        changes.pop("status")
    return call.model_copy(update=changes)


# ──────────────────────────────────────────────────────────────
#  Transcripts and stats
# ──────────────────────────────────────────────────────────────

class TranscriptEntry(_CamelModel):
    id: str = Field(default_factory=new_call_id)
    call_id: str
    text: str
    confidence: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)


class CallStats(_CamelModel):
    total_calls: int = 0
    completed_calls: int = 0
    verified_calls: int = 0
    failed_calls: int = 0
    avg_duration: Optional[float] = None


# ──────────────────────────────────────────────────────────────
#  Events: real-time notification payloads
# ──────────────────────────────────────────────────────────────

class CallEvent(BaseModel):
    """Message pushed to subscribers: ``{type, ...payload, timestamp}``."""
    type: EventType
    payload: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            **self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

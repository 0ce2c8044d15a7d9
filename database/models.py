"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - String primary keys (uuid hex): no database-specific sequences.
  - Calls are never deleted; transcripts reference calls by foreign key
    without cascading.
  - Indexed by provider call ID and phone number for webhook correlation
    and lookups.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text, ForeignKey, Index,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from models.schemas import CallRecord, CallStatus, TranscriptEntry


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Calls
# ──────────────────────────────────────────────────────────────

class CallRow(Base):
    __tablename__ = "calls"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    provider_call_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    otp_code: Mapped[str] = mapped_column(String(32), nullable=False)
    language: Mapped[str] = mapped_column(String(16), default="en-US")
    transfer_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    status: Mapped[str] = mapped_column(String(32), default=CallStatus.INITIATED.value)
    dtmf_input: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    dtmf_attempts: Mapped[int] = mapped_column(Integer, default=0)
    dtmf_event_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    recording_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    answered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dtmf_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    transcripts: Mapped[list["TranscriptRow"]] = relationship(
        back_populates="call", order_by="TranscriptRow.timestamp",
    )

    __table_args__ = (
        Index("ix_calls_provider_call_id", "provider_call_id"),
        Index("ix_calls_phone_number", "phone_number"),
        Index("ix_calls_created", "created_at"),
    )

    @classmethod
    def from_record(cls, call: CallRecord) -> "CallRow":
        data = call.model_dump()
        data["status"] = call.status.value
        return cls(**data)

    def to_record(self) -> CallRecord:
        return CallRecord(
            id=self.id,
            provider_call_id=self.provider_call_id,
            phone_number=self.phone_number,
            otp_code=self.otp_code,
            language=self.language,
            transfer_number=self.transfer_number,
            status=CallStatus(self.status),
            dtmf_input=self.dtmf_input,
            dtmf_attempts=self.dtmf_attempts or 0,
            dtmf_event_key=self.dtmf_event_key,
            verified=bool(self.verified),
            recording_url=self.recording_url,
            created_at=_aware(self.created_at),
            answered_at=_aware(self.answered_at),
            dtmf_received_at=_aware(self.dtmf_received_at),
            verified_at=_aware(self.verified_at),
            ended_at=_aware(self.ended_at),
            duration=self.duration,
        )


# ──────────────────────────────────────────────────────────────
#  Transcripts
# ──────────────────────────────────────────────────────────────

class TranscriptRow(Base):
    __tablename__ = "transcripts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    call_id: Mapped[str] = mapped_column(String(64), ForeignKey("calls.id"), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    call: Mapped["CallRow"] = relationship(back_populates="transcripts")

    __table_args__ = (
        Index("ix_transcripts_call_ts", "call_id", "timestamp"),
    )

    def to_entry(self) -> TranscriptEntry:
        return TranscriptEntry(
            id=self.id,
            call_id=self.call_id,
            text=self.text,
            confidence=self.confidence,
            timestamp=_aware(self.timestamp),
        )

"""
Abstract Call Store: Interface for all storage backends.

Implementations:
  - SqlCallStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCallStore (dict-based, single-process, no persistence)
  - FileCallStore     (JSON files on disk, single-process, durable)

Contract shared by every backend:
  - update_call() applies a CallPatch atomically to one record and never
    moves a record out of a terminal status.
  - add_transcript() enforces foreign-key semantics: StoreError when the
    call does not exist.
  - Backend failures surface as core.errors.StoreError.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import CallPatch, CallRecord, CallStats, TranscriptEntry


class BaseCallStore(ABC):
    """Interface that all call store backends must implement."""

    # ── Calls ─────────────────────────────────────────────────

    @abstractmethod
    async def create_call(self, call: CallRecord) -> CallRecord:
        ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def get_call_by_provider_id(self, provider_call_id: str) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def update_call(self, call_id: str, patch: CallPatch) -> Optional[CallRecord]:
        """Apply ``patch``; returns the updated record or None if unknown."""
        ...

    @abstractmethod
    async def list_calls(self, limit: int = 100, offset: int = 0) -> list[CallRecord]:
        """Most recent first."""
        ...

    # ── Transcripts ───────────────────────────────────────────

    @abstractmethod
    async def add_transcript(
        self, call_id: str, text: str, confidence: Optional[float] = None,
    ) -> TranscriptEntry:
        ...

    @abstractmethod
    async def get_transcripts(self, call_id: str) -> list[TranscriptEntry]:
        """Oldest first."""
        ...

    # ── Aggregates / health ───────────────────────────────────

    @abstractmethod
    async def get_stats(self) -> CallStats:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

"""
InMemoryCallStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlCallStore
  - Atomic per-record patches (no await between read and write)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from typing import Optional

from core.errors import StoreError
from database.store_base import BaseCallStore
from models.schemas import (
    CallPatch, CallRecord, CallStats, CallStatus, TranscriptEntry, apply_patch,
)

logger = structlog.get_logger()


class InMemoryCallStore(BaseCallStore):
    """
    Full-featured in-memory store with the same interface as SqlCallStore.
    Hands out copies so callers never mutate stored state in place.
    """

    def __init__(self):
        self._calls: dict[str, CallRecord] = {}                          # id → call
        self._transcripts: dict[str, list[TranscriptEntry]] = defaultdict(list)  # call_id → entries

        # Indexes
        self._provider_index: dict[str, str] = {}        # provider_call_id → call id
        logger.info("inmemory_store_initialized")

    # ── Calls ─────────────────────────────────────────────

    async def create_call(self, call: CallRecord) -> CallRecord:
        if call.id in self._calls:
            raise StoreError(f"Call {call.id} already exists")
        self._calls[call.id] = call.model_copy()
        if call.provider_call_id:
            self._provider_index[call.provider_call_id] = call.id
        return call.model_copy()

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        call = self._calls.get(call_id)
        return call.model_copy() if call else None

    async def get_call_by_provider_id(self, provider_call_id: str) -> Optional[CallRecord]:
        cid = self._provider_index.get(provider_call_id)
        if not cid:
            return None
        return await self.get_call(cid)

    async def update_call(self, call_id: str, patch: CallPatch) -> Optional[CallRecord]:
        current = self._calls.get(call_id)
        if current is None:
            return None
        updated = apply_patch(current, patch)
        self._calls[call_id] = updated
        if updated.provider_call_id and updated.provider_call_id != current.provider_call_id:
            self._provider_index.pop(current.provider_call_id or "", None)
            self._provider_index[updated.provider_call_id] = call_id
        return updated.model_copy()

    async def list_calls(self, limit: int = 100, offset: int = 0) -> list[CallRecord]:
        calls = sorted(self._calls.values(), key=lambda c: c.created_at, reverse=True)
        return [c.model_copy() for c in calls[offset:offset + limit]]

    # ── Transcripts ───────────────────────────────────────

    async def add_transcript(
        self, call_id: str, text: str, confidence: Optional[float] = None,
    ) -> TranscriptEntry:
        if call_id not in self._calls:
            raise StoreError(f"Cannot add transcript: unknown call {call_id}")
        entry = TranscriptEntry(call_id=call_id, text=text, confidence=confidence)
        self._transcripts[call_id].append(entry)
        return entry.model_copy()

    async def get_transcripts(self, call_id: str) -> list[TranscriptEntry]:
        entries = sorted(self._transcripts.get(call_id, []), key=lambda t: t.timestamp)
        return [t.model_copy() for t in entries]

    # ── Aggregates ────────────────────────────────────────

    async def get_stats(self) -> CallStats:
        calls = list(self._calls.values())
        durations = [c.duration for c in calls if c.duration is not None]
        return CallStats(
            total_calls=len(calls),
            completed_calls=sum(1 for c in calls if c.status == CallStatus.COMPLETED),
            verified_calls=sum(1 for c in calls if c.verified),
            failed_calls=sum(
                1 for c in calls if c.status in (CallStatus.FAILED, CallStatus.REJECTED)
            ),
            avg_duration=(sum(durations) / len(durations)) if durations else None,
        )

"""
SqlCallStore: Portable SQL queries for PostgreSQL, MySQL, SQLite.

Patches become a single UPDATE per record. The terminal-status guard is
part of that statement (a CASE expression), so it also holds when several
worker processes race on the same call.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import select, update, func, case, text
from sqlalchemy.exc import SQLAlchemyError

from core.errors import StoreError
from database.models import CallRow, TranscriptRow
from database.session import get_session
from database.store_base import BaseCallStore
from models.schemas import (
    CallPatch, CallRecord, CallStats, CallStatus, TranscriptEntry, TERMINAL_STATUSES,
)

logger = structlog.get_logger()

_TERMINAL_VALUES = sorted(s.value for s in TERMINAL_STATUSES)


class SqlCallStore(BaseCallStore):
    """
    Persistent call store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Call operations ────────────────────────────────────

    async def create_call(self, call: CallRecord) -> CallRecord:
        try:
            async with get_session() as db:
                row = CallRow.from_record(call)
                db.add(row)
                await db.flush()
                return row.to_record()
        except SQLAlchemyError as e:
            logger.error("store_create_call_failed", call_id=call.id, error=str(e))
            raise StoreError("Failed to create call", detail=str(e)) from e

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        try:
            async with get_session() as db:
                row = await db.get(CallRow, call_id)
                return row.to_record() if row else None
        except SQLAlchemyError as e:
            raise StoreError("Failed to read call", detail=str(e)) from e

    async def get_call_by_provider_id(self, provider_call_id: str) -> Optional[CallRecord]:
        try:
            async with get_session() as db:
                stmt = select(CallRow).where(CallRow.provider_call_id == provider_call_id).limit(1)
                result = await db.execute(stmt)
                row = result.scalar_one_or_none()
                return row.to_record() if row else None
        except SQLAlchemyError as e:
            raise StoreError("Failed to read call", detail=str(e)) from e

    async def update_call(self, call_id: str, patch: CallPatch) -> Optional[CallRecord]:
        values = patch.changes()
        if not values:
            return await self.get_call(call_id)

        if "status" in values:
            values["status"] = case(
                (CallRow.status.in_(_TERMINAL_VALUES), CallRow.status),
                else_=values["status"].value,
            )

        try:
            async with get_session() as db:
                stmt = (
                    update(CallRow)
                    .where(CallRow.id == call_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                if result.rowcount == 0:
                    return None
                row = await db.get(CallRow, call_id, populate_existing=True)
                return row.to_record() if row else None
        except SQLAlchemyError as e:
            logger.error("store_update_call_failed", call_id=call_id, error=str(e))
            raise StoreError("Failed to update call", detail=str(e)) from e

    async def list_calls(self, limit: int = 100, offset: int = 0) -> list[CallRecord]:
        try:
            async with get_session() as db:
                stmt = (
                    select(CallRow)
                    .order_by(CallRow.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
                result = await db.execute(stmt)
                return [r.to_record() for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError("Failed to list calls", detail=str(e)) from e

    # ── Transcript operations ──────────────────────────────

    async def add_transcript(
        self, call_id: str, text: str, confidence: Optional[float] = None,
    ) -> TranscriptEntry:
        try:
            async with get_session() as db:
                # SQLite does not enforce foreign keys unless asked to
                if await db.get(CallRow, call_id) is None:
                    raise StoreError(f"Cannot add transcript: unknown call {call_id}")
                row = TranscriptRow(call_id=call_id, text=text, confidence=confidence)
                db.add(row)
                await db.flush()
                return row.to_entry()
        except SQLAlchemyError as e:
            logger.error("store_add_transcript_failed", call_id=call_id, error=str(e))
            raise StoreError("Failed to add transcript", detail=str(e)) from e

    async def get_transcripts(self, call_id: str) -> list[TranscriptEntry]:
        try:
            async with get_session() as db:
                stmt = (
                    select(TranscriptRow)
                    .where(TranscriptRow.call_id == call_id)
                    .order_by(TranscriptRow.timestamp.asc())
                )
                result = await db.execute(stmt)
                return [r.to_entry() for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError("Failed to read transcripts", detail=str(e)) from e

    # ── Aggregates ─────────────────────────────────────────

    async def get_stats(self) -> CallStats:
        try:
            async with get_session() as db:
                stmt = select(
                    func.count(CallRow.id),
                    func.sum(case((CallRow.status == CallStatus.COMPLETED.value, 1), else_=0)),
                    func.sum(case((CallRow.verified.is_(True), 1), else_=0)),
                    func.sum(case(
                        (CallRow.status.in_([CallStatus.FAILED.value, CallStatus.REJECTED.value]), 1),
                        else_=0,
                    )),
                    func.avg(CallRow.duration),
                )
                total, completed, verified, failed, avg_duration = (await db.execute(stmt)).one()
                return CallStats(
                    total_calls=total or 0,
                    completed_calls=completed or 0,
                    verified_calls=verified or 0,
                    failed_calls=failed or 0,
                    avg_duration=float(avg_duration) if avg_duration is not None else None,
                )
        except SQLAlchemyError as e:
            raise StoreError("Failed to compute stats", detail=str(e)) from e

    async def ping(self) -> bool:
        try:
            async with get_session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("store_ping_failed", error=str(e))
            return False

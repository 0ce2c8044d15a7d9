"""
FileCallStore: JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    calls.json
    transcripts.json

Features:
  - Survives process restarts (unlike InMemoryCallStore)
  - No external dependencies (no database server)
  - Writes flush immediately, or batched with flush_interval_s > 0
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryCallStore
from models.schemas import CallPatch, CallRecord, TranscriptEntry

logger = structlog.get_logger()

_COLLECTIONS = ["calls", "transcripts"]


class FileCallStore(InMemoryCallStore):
    """
    Extends InMemoryCallStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._set_collection(collection, data)
                logger.debug("file_store_loaded",
                             collection=collection,
                             records=len(data) if isinstance(data, dict) else "N/A")
            except (json.JSONDecodeError, ValueError, TypeError, KeyError) as e:
                logger.warning("file_store_load_error",
                               collection=collection, error=str(e))

    def _set_collection(self, collection: str, data: Any):
        """Restore a collection from loaded JSON data."""
        if not isinstance(data, dict):
            return
        if collection == "calls":
            self._calls = {cid: CallRecord.model_validate(c) for cid, c in data.items()}
            # Rebuild index
            self._provider_index.clear()
            for cid, call in self._calls.items():
                if call.provider_call_id:
                    self._provider_index[call.provider_call_id] = cid
        elif collection == "transcripts":
            self._transcripts = defaultdict(list, {
                cid: [TranscriptEntry.model_validate(t) for t in entries]
                for cid, entries in data.items()
            })

    def _get_collection_data(self, collection: str) -> Any:
        """Get serializable data for a collection."""
        if collection == "calls":
            return {cid: c.model_dump(mode="json") for cid, c in self._calls.items()}
        if collection == "transcripts":
            return {
                cid: [t.model_dump(mode="json") for t in entries]
                for cid, entries in self._transcripts.items()
            }
        return {}

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(
                    self._deferred_flush()
                )

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def create_call(self, call: CallRecord) -> CallRecord:
        result = await super().create_call(call)
        self._mark_dirty("calls")
        return result

    async def update_call(self, call_id: str, patch: CallPatch) -> Optional[CallRecord]:
        result = await super().update_call(call_id, patch)
        if result is not None:
            self._mark_dirty("calls")
        return result

    async def add_transcript(
        self, call_id: str, text: str, confidence: Optional[float] = None,
    ) -> TranscriptEntry:
        result = await super().add_transcript(call_id, text, confidence)
        self._mark_dirty("transcripts")
        return result

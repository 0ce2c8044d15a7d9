"""
Event Broadcaster: pushes call lifecycle events to WebSocket subscribers.

Each subscriber gets a bounded outbox and a writer task. ``publish`` only
enqueues, so a slow or dead subscriber never delays callback handling or
other subscribers. A subscriber whose outbox overflows or whose socket
fails is dropped and its socket closed with 1011.

Client messages:
  {"type": "ping"}  → {"type": "pong", "timestamp": ...}
Anything else is ignored.
"""
from __future__ import annotations

import json
import uuid
import asyncio
import structlog
from typing import Any, Optional

from models.schemas import CallEvent, EventType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  SUBSCRIBER
# ══════════════════════════════════════════════════════════════

class Subscriber:
    """One WebSocket connection and its outbox."""

    def __init__(self, ws: Any, max_pending: int):
        self.id = uuid.uuid4().hex[:12]
        self.ws = ws
        self.outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=max_pending)
        self.sent_count: int = 0
        self.writer: Optional[asyncio.Task] = None

    def drain(self) -> None:
        while not self.outbox.empty():
            self.outbox.get_nowait()
            self.outbox.task_done()


# ══════════════════════════════════════════════════════════════
#  BROADCASTER
# ══════════════════════════════════════════════════════════════

class EventBroadcaster:

    def __init__(self, max_pending: int = 100):
        self._subscribers: dict[str, Subscriber] = {}
        self._max_pending = max_pending
        self._closing: set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── Connection management ─────────────────────────────────

    async def subscribe(self, ws: Any) -> str:
        """
        Register an accepted WebSocket and greet it with a ``connected``
        event. Returns the subscriber ID used for unsubscribe/handle_message.
        """
        sub = Subscriber(ws, self._max_pending)
        self._subscribers[sub.id] = sub
        sub.writer = asyncio.create_task(self._write_loop(sub))
        self._enqueue(sub, self._encode(EventType.CONNECTED, {"message": "Connected to call events"}))
        logger.info("subscriber_connected", subscriber_id=sub.id, total=len(self._subscribers))
        return sub.id

    async def unsubscribe(self, subscriber_id: str) -> None:
        sub = self._subscribers.pop(subscriber_id, None)
        if sub is None:
            return
        await self._stop(sub)
        logger.info("subscriber_disconnected", subscriber_id=subscriber_id,
                    sent=sub.sent_count, total=len(self._subscribers))

    async def close(self) -> None:
        subs = list(self._subscribers.values())
        self._subscribers.clear()
        for sub in subs:
            await self._stop(sub)

    # ── Publish ───────────────────────────────────────────────

    def publish(self, event_type: EventType, **payload: Any) -> int:
        """
        Queue an event for every current subscriber.

        Never blocks and never raises. Returns the number of subscribers the
        event was queued for.
        """
        if not self._subscribers:
            return 0
        try:
            text = self._encode(event_type, payload)
        except (TypeError, ValueError) as e:
            logger.error("event_encode_failed", event=event_type.value, error=str(e))
            return 0

        queued = 0
        for sub in list(self._subscribers.values()):
            if self._enqueue(sub, text):
                queued += 1
        return queued

    async def handle_message(self, subscriber_id: str, raw: str) -> None:
        """Handle a client → server message. Only ``ping`` is understood."""
        sub = self._subscribers.get(subscriber_id)
        if sub is None:
            return
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug("subscriber_message_invalid", subscriber_id=subscriber_id)
            return
        if isinstance(data, dict) and data.get("type") == "ping":
            self._enqueue(sub, self._encode(EventType.PONG, {}))

    async def join(self) -> None:
        """Wait until every queued message is written or discarded and dropped sockets are closed."""
        for sub in list(self._subscribers.values()):
            await sub.outbox.join()
        if self._closing:
            await asyncio.gather(*list(self._closing))

    # ── Internals ─────────────────────────────────────────────

    @staticmethod
    def _encode(event_type: EventType, payload: dict[str, Any]) -> str:
        event = CallEvent(type=event_type, payload=payload)
        return json.dumps(event.to_message(), default=str)

    def _enqueue(self, sub: Subscriber, text: str) -> bool:
        try:
            sub.outbox.put_nowait(text)
            return True
        except asyncio.QueueFull:
            logger.warning("subscriber_outbox_full", subscriber_id=sub.id)
            self._drop(sub)
            return False

    def _drop(self, sub: Subscriber) -> None:
        if self._subscribers.pop(sub.id, None) is None:
            return
        sub.drain()
        if sub.writer and sub.writer is not asyncio.current_task():
            sub.writer.cancel()
        task = asyncio.create_task(self._close_socket(sub))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        logger.info("subscriber_dropped", subscriber_id=sub.id, total=len(self._subscribers))

    @staticmethod
    async def _close_socket(sub: Subscriber) -> None:
        try:
            await sub.ws.close(code=1011)
        except Exception as e:
            logger.debug("subscriber_close_failed", subscriber_id=sub.id, error=str(e))

    async def _stop(self, sub: Subscriber) -> None:
        sub.drain()
        if sub.writer and not sub.writer.done():
            sub.writer.cancel()
            try:
                await sub.writer
            except asyncio.CancelledError:
                pass

    async def _write_loop(self, sub: Subscriber) -> None:
        while True:
            text = await sub.outbox.get()
            try:
                await sub.ws.send_text(text)
                sub.sent_count += 1
            except Exception as e:
                logger.warning("subscriber_send_failed", subscriber_id=sub.id, error=str(e))
                sub.outbox.task_done()
                self._drop(sub)
                sub.drain()
                return
            sub.outbox.task_done()

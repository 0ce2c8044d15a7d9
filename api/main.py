"""
FastAPI Application: REST API + WebSocket + Vonage webhooks.

Provides:
- REST API to trigger OTP calls and inspect call records
- Webhook endpoints Vonage calls during a call (answer, event, DTMF, recording)
- WebSocket endpoint pushing call lifecycle events to dashboards
- Health check
"""
from __future__ import annotations

import json
import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Query, BackgroundTasks
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from config.settings import get_settings
from core.broadcaster import EventBroadcaster
from core.errors import CallError
from core.flows import to_ncco
from core.orchestrator import CallOrchestrator
from channels.telephony.factory import TelephonyFactory
from channels.transcription.deepgram_client import DeepgramClient
from database.session import init_db, close_db
from database.store_factory import create_configured_store

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

call_store = create_configured_store()
broadcaster = EventBroadcaster(max_pending=_settings_boot.broadcast.max_pending_messages)
telephony = TelephonyFactory.create(_settings_boot.vonage)

transcriber: Optional[DeepgramClient] = None
if _settings_boot.transcription.enabled and _settings_boot.transcription.api_key:
    transcriber = DeepgramClient(
        api_key=_settings_boot.transcription.api_key,
        model=_settings_boot.transcription.model,
        base_url=_settings_boot.transcription.base_url,
        timeout_s=_settings_boot.transcription.timeout_s,
    )

orchestrator = CallOrchestrator(
    store=call_store,
    telephony=telephony,
    broadcaster=broadcaster,
    transcriber=transcriber,
    settings=_settings_boot,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    sql_backend = settings.database.store_backend == "sql"

    if sql_backend:
        await init_db(settings.database)

    logger.info("otp_caller_started",
                store_backend=settings.database.store_backend,
                base_url=settings.base_url,
                telephony_configured=settings.vonage.configured,
                transcription=orchestrator.recording_enabled)
    yield

    await broadcaster.close()
    await telephony.close()
    if transcriber:
        await transcriber.close()
    await call_store.close()
    if sql_backend:
        await close_db()
    logger.info("otp_caller_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="OTP Voice Caller API",
    description="Delivers one-time passcodes by phone call and verifies keypad entry",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CallError)
async def call_error_handler(request: Request, exc: CallError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": json.loads(json.dumps(exc.errors(), default=str))},
    )


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class TriggerCallRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    phone_number: str = ""
    otp_code: str = ""
    language: Optional[str] = None
    transfer_number: Optional[str] = None


async def _read_payload(request: Request) -> dict[str, Any]:
    """Webhook JSON body as a dict; an unreadable body becomes {}."""
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("webhook_body_unreadable", path=request.url.path, error=str(e))
        return {}
    return data if isinstance(data, dict) else {}


def _extract_digits(payload: dict[str, Any]) -> str:
    """Handles {dtmf: {digits}}, {dtmf: "..."} and {digits}."""
    dtmf = payload.get("dtmf")
    if isinstance(dtmf, dict):
        return str(dtmf.get("digits") or "")
    if dtmf is not None:
        return str(dtmf)
    return str(payload.get("digits") or "")


def _delivery_key(payload: dict[str, Any]) -> Optional[str]:
    """Identity of one input webhook: call uuid plus event timestamp."""
    timestamp = payload.get("timestamp")
    if not timestamp:
        return None
    return f"{payload.get('uuid') or ''}:{timestamp}"


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "store": settings.database.store_backend,
            "database": await call_store.ping(),
            "vonage": settings.vonage.configured,
            "transcription": orchestrator.recording_enabled,
            "subscribers": broadcaster.subscriber_count,
        },
    }


# ══════════════════════════════════════════════════════════════
#  CALLS
# ══════════════════════════════════════════════════════════════

@app.post("/calls", status_code=201)
async def trigger_call(req: TriggerCallRequest):
    local_id, provider_call_id = await orchestrator.trigger_call(
        phone_number=req.phone_number,
        otp_code=req.otp_code,
        language=req.language,
        transfer_number=req.transfer_number,
    )
    return {"localId": local_id, "providerCallId": provider_call_id}


@app.get("/calls")
async def list_calls(limit: int = Query(100, ge=1), offset: int = Query(0, ge=0)):
    calls = await orchestrator.list_calls(limit=limit, offset=offset)
    return {
        "calls": [c.public_dict() for c in calls],
        "count": len(calls),
        "limit": limit,
        "offset": offset,
    }


@app.get("/calls/{call_id}")
async def get_call(call_id: str):
    call, transcripts = await orchestrator.get_call(call_id)
    return {
        **call.public_dict(),
        "transcripts": [t.model_dump(mode="json", by_alias=True) for t in transcripts],
    }


@app.get("/stats")
async def get_stats():
    stats = await orchestrator.get_stats()
    return stats.model_dump(mode="json", by_alias=True)


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: Vonage
# ══════════════════════════════════════════════════════════════

@app.get("/calls/{call_id}/answer-callback")
async def answer_callback(call_id: str):
    """Vonage answer_url: returns the NCCO that reads out the code."""
    flow = await orchestrator.handle_answered(call_id)
    return JSONResponse(content=to_ncco(flow))


@app.post("/calls/event-callback")
async def event_callback(request: Request):
    """Vonage event_url. Always acknowledged with 200."""
    payload = await _read_payload(request)
    event = TelephonyFactory.get_webhook_parser()(payload)
    await orchestrator.handle_provider_event(event["call_id"], event["status"], event)
    return {"status": "ok"}


@app.post("/calls/{call_ref}/dtmf-callback")
async def dtmf_callback(call_ref: str, request: Request):
    """Input action eventUrl. ``call_ref`` is a local or provider call ID."""
    payload = await _read_payload(request)
    flow = await orchestrator.handle_dtmf(call_ref, _extract_digits(payload), _delivery_key(payload))
    return JSONResponse(content=to_ncco(flow))


@app.post("/calls/{call_id}/recording-callback")
async def recording_callback(call_id: str, request: Request, background: BackgroundTasks):
    """Record action eventUrl; transcription runs after the response is sent."""
    payload = await _read_payload(request)
    recording_url = payload.get("recording_url")
    if not recording_url or not isinstance(recording_url, str):
        logger.warning("recording_callback_missing_url", call_id=call_id)
        return {"status": "ignored"}
    background.add_task(orchestrator.handle_recording, call_id, recording_url)
    return {"status": "accepted"}


# ══════════════════════════════════════════════════════════════
#  WEBSOCKET: Live call events
# ══════════════════════════════════════════════════════════════

@app.websocket("/ws")
async def websocket_events(websocket: WebSocket):
    """
    Pushes call lifecycle events as JSON.

    Client sends:
      {"type": "ping"}  → {"type": "pong", "timestamp": ...}
    """
    await websocket.accept()
    subscriber_id = await broadcaster.subscribe(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            await broadcaster.handle_message(subscriber_id, raw)

    except WebSocketDisconnect:
        await broadcaster.unsubscribe(subscriber_id)
    except asyncio.CancelledError:
        await broadcaster.unsubscribe(subscriber_id)
        raise
    except Exception as e:
        logger.error("websocket_error", subscriber_id=subscriber_id, error=str(e))
        await broadcaster.unsubscribe(subscriber_id)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

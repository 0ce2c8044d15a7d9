"""
Orchestrator: The central coordinator for the OTP call lifecycle.

Architecture:
  Trigger:   API request → validate → create CallRecord(initiated)
             → telephony.initiate_call() → record provider ID, status ringing
             → publish call_initiated

  Callbacks: provider webhook → correlate to CallRecord (provider ID or
             local ID) → per-call lock → re-read from store → typed CallPatch
             → publish event → return Flow for the provider to execute

The store is the only source of truth between callbacks; nothing about a
call is held in memory across requests. Callbacks for the same call are
serialized through a KeyedLock, callbacks for different calls run
concurrently.

Provider callbacks never raise: answer and DTMF callbacks fall back to the
not-found or apology flow, event and recording callbacks log and return.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from config.settings import Settings, get_settings
from core.broadcaster import EventBroadcaster
from core.errors import NotFound, ProviderError, ValidationError
from core.flows import Flow, FlowStage, build_flow
from core.locks import KeyedLock
from database.store_base import BaseCallStore
from models.schemas import (
    CallPatch, CallRecord, CallStats, CallStatus, EventType, TranscriptEntry, utcnow,
)

logger = structlog.get_logger()


# Vonage event vocabulary → CallStatus
PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "started": CallStatus.IN_PROGRESS,
    "ringing": CallStatus.RINGING,
    "answered": CallStatus.ANSWERED,
    "completed": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "rejected": CallStatus.REJECTED,
    "unanswered": CallStatus.UNANSWERED,
    "timeout": CallStatus.UNANSWERED,
    "busy": CallStatus.BUSY,
    "cancelled": CallStatus.FAILED,
}


def transition_patch(
    call: CallRecord, target: CallStatus, duration: Optional[int] = None,
) -> CallPatch:
    """
    Build the patch that moves ``call`` towards ``target``.

    Terminal calls get an empty patch, so replayed terminal events never
    move ended_at or duration. Status only moves forward along the happy
    path; a terminal target is reachable from any non-terminal state.
    """
    if call.is_terminal:
        return CallPatch()

    now = utcnow()
    changes: dict[str, Any] = {}
    if target.is_terminal or target.rank > call.status.rank:
        changes["status"] = target
    if target == CallStatus.ANSWERED and call.answered_at is None:
        changes["answered_at"] = now
    if target.is_terminal:
        changes["ended_at"] = now
    if target == CallStatus.COMPLETED and duration is not None:
        changes["duration"] = duration
    return CallPatch(**changes)


class CallOrchestrator:
    """
    Stateless handlers over the call store.

    Collaborators are injected so tests can pass an in-memory store and an
    AsyncMock telephony client.
    """

    def __init__(
        self,
        store: BaseCallStore,
        telephony: Any,
        broadcaster: EventBroadcaster,
        transcriber: Any = None,
        settings: Settings = None,
    ):
        self.store = store
        self.telephony = telephony
        self.broadcaster = broadcaster
        self.transcriber = transcriber
        self.settings = settings or get_settings()
        self.locks = KeyedLock()

    @property
    def recording_enabled(self) -> bool:
        return self.settings.transcription.enabled and self.transcriber is not None

    def _flow(self, call: Optional[CallRecord], stage: FlowStage) -> Flow:
        return build_flow(
            call, stage, self.settings.base_url,
            dtmf_timeout_s=self.settings.calls.dtmf_timeout_s,
            record=self.recording_enabled,
            transfer_from=self.settings.vonage.from_number,
        )

    def _url(self, path: str) -> str:
        return f"{self.settings.base_url.rstrip('/')}{path}"

    # ══════════════════════════════════════════════════════════
    #  TRIGGER
    # ══════════════════════════════════════════════════════════

    async def trigger_call(
        self,
        phone_number: str,
        otp_code: str,
        language: Optional[str] = None,
        transfer_number: Optional[str] = None,
    ) -> tuple[str, str]:
        """
        Create a call record and ask the provider to place the call.

        Returns (local_id, provider_call_id).

        Raises:
            ValidationError: blank phone number, blank or non-digit OTP.
            ProviderError: the provider call failed or timed out. The record
                is marked failed before this is raised.
            StoreError: persistence failed.
        """
        phone_number = (phone_number or "").strip()
        otp_code = (otp_code or "").strip()
        if not phone_number or not otp_code:
            raise ValidationError("Phone number and OTP code are required")
        if not otp_code.isdigit() or not otp_code.isascii():
            raise ValidationError("OTP code must contain digits 0-9 only",
                                  detail={"otpCode": "digits only"})

        call = CallRecord(
            phone_number=phone_number,
            otp_code=otp_code,
            language=language or self.settings.calls.default_language,
            transfer_number=(transfer_number or "").strip() or None,
        )
        call = await self.store.create_call(call)
        logger.info("call_created", call_id=call.id, language=call.language)

        try:
            result = await asyncio.wait_for(
                self.telephony.initiate_call(
                    to=phone_number,
                    answer_url=self._url(f"/calls/{call.id}/answer-callback"),
                    event_url=self._url("/calls/event-callback"),
                ),
                timeout=self.settings.calls.trigger_timeout_s,
            )
        except Exception as e:
            detail = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            logger.error("call_trigger_failed", call_id=call.id, error=detail)
            async with self.locks(call.id):
                await self.store.update_call(call.id, CallPatch(
                    status=CallStatus.FAILED, ended_at=utcnow(),
                ))
            self.broadcaster.publish(
                EventType.CALL_EVENT, callId=call.id, event=CallStatus.FAILED.value,
            )
            raise ProviderError("Failed to place call", detail=detail, provider="vonage") from e

        provider_call_id = str(result.get("sid") or "")
        async with self.locks(call.id):
            current = await self.store.get_call(call.id) or call
            changes: dict[str, Any] = {"provider_call_id": provider_call_id}
            # The answer callback can win the race against this update
            if current.status.rank < CallStatus.RINGING.rank:
                changes["status"] = CallStatus.RINGING
            await self.store.update_call(call.id, CallPatch(**changes))

        self.broadcaster.publish(
            EventType.CALL_INITIATED,
            callId=call.id, phoneNumber=phone_number, providerCallId=provider_call_id,
        )
        logger.info("call_triggered", call_id=call.id, provider_call_id=provider_call_id)
        return call.id, provider_call_id

    # ══════════════════════════════════════════════════════════
    #  PROVIDER CALLBACKS
    # ══════════════════════════════════════════════════════════

    async def handle_answered(self, local_id: str) -> Flow:
        """Answer callback: mark answered and return the deliver-code flow."""
        try:
            async with self.locks(local_id):
                call = await self.store.get_call(local_id)
                if call is None:
                    logger.warning("answer_unknown_call", call_id=local_id)
                    return self._flow(None, FlowStage.NOT_FOUND)

                patch = transition_patch(call, CallStatus.ANSWERED)
                if patch:
                    call = await self.store.update_call(call.id, patch) or call

            self.broadcaster.publish(
                EventType.CALL_ANSWERED, callId=call.id, phoneNumber=call.phone_number,
            )
            logger.info("call_answered", call_id=call.id, status=call.status.value)
            return self._flow(call, FlowStage.DELIVER_CODE)

        except Exception as e:
            logger.error("answer_callback_failed", call_id=local_id, error=str(e))
            return self._flow(None, FlowStage.APOLOGY)

    async def handle_dtmf(
        self, call_ref: str, digits: str, delivery_key: Optional[str] = None,
    ) -> Flow:
        """
        DTMF callback: record the digits and check them against the OTP.

        ``call_ref`` is a provider call ID or a local ID. Digits are compared
        to the OTP as-is. Status is never written here, so late input on a
        finished call is recorded without reviving it.

        ``delivery_key`` identifies one input webhook. A redelivery carrying
        the last applied key answers from the stored result without counting
        another attempt or publishing again.
        """
        digits = digits or ""
        try:
            found = await self._find_call(call_ref)
            if found is None:
                logger.warning("dtmf_unknown_call", call_ref=call_ref)
                return self._flow(None, FlowStage.NOT_FOUND)

            async with self.locks(found.id):
                call = await self.store.get_call(found.id)
                if call is None:
                    return self._flow(None, FlowStage.NOT_FOUND)

                if delivery_key and delivery_key == call.dtmf_event_key:
                    logger.info("dtmf_replay_ignored", call_id=call.id, delivery_key=delivery_key)
                    return self._dtmf_flow(call, call.verified, call.dtmf_attempts)

                now = utcnow()
                is_valid = digits == call.otp_code
                attempts = call.dtmf_attempts + 1
                call = await self.store.update_call(call.id, CallPatch(
                    dtmf_input=digits,
                    dtmf_received_at=now,
                    dtmf_attempts=attempts,
                    dtmf_event_key=delivery_key,
                    verified=is_valid,
                    verified_at=now,
                )) or call

            self.broadcaster.publish(
                EventType.DTMF_RECEIVED,
                callId=call.id, dtmf=digits, isValid=is_valid, attempts=attempts,
            )
            logger.info("dtmf_received", call_id=call.id, valid=is_valid, attempts=attempts)
            return self._dtmf_flow(call, is_valid, attempts)

        except Exception as e:
            logger.error("dtmf_callback_failed", call_ref=call_ref, error=str(e))
            return self._flow(None, FlowStage.APOLOGY)

    def _dtmf_flow(self, call: CallRecord, is_valid: bool, attempts: int) -> Flow:
        if is_valid:
            return self._flow(call, FlowStage.CONFIRM_SUCCESS)
        if attempts >= self.settings.calls.max_dtmf_attempts:
            logger.info("dtmf_attempts_exhausted", call_id=call.id, attempts=attempts,
                        transfer=bool(call.transfer_number))
            return self._flow(call, FlowStage.ATTEMPTS_EXHAUSTED)
        return self._flow(call, FlowStage.CONFIRM_FAILURE)

    async def handle_provider_event(
        self,
        provider_call_id: str,
        event_status: str,
        event_data: Optional[dict[str, Any]] = None,
    ) -> Optional[CallRecord]:
        """
        Status webhook. Always publishes call_event; never raises.

        Returns the updated record, or None when the call is unknown or the
        event could not be applied.
        """
        event_data = event_data or {}
        status = (event_status or "").lower()
        call: Optional[CallRecord] = None
        try:
            found = await self._find_call(provider_call_id) if provider_call_id else None
            target = PROVIDER_STATUS_MAP.get(status)

            if found is None:
                logger.warning("event_unknown_call",
                               provider_call_id=provider_call_id, status=status)
            elif target is None:
                logger.info("event_status_ignored", call_id=found.id, status=status)
                call = found
            else:
                async with self.locks(found.id):
                    call = await self.store.get_call(found.id)
                    if call is not None:
                        patch = transition_patch(call, target, _as_int(event_data.get("duration")))
                        if patch:
                            call = await self.store.update_call(call.id, patch) or call
                        else:
                            logger.debug("event_no_change", call_id=call.id, status=status)
                if call is not None:
                    logger.info("call_event", call_id=call.id, event=status,
                                status=call.status.value)

        except Exception as e:
            logger.error("event_callback_failed",
                         provider_call_id=provider_call_id, status=status, error=str(e))

        self.broadcaster.publish(
            EventType.CALL_EVENT,
            callId=call.id if call else None,
            providerCallId=provider_call_id or None,
            event=status,
        )
        return call

    async def handle_recording(self, local_id: str, recording_url: str) -> list[TranscriptEntry]:
        """
        Recording callback: store the URL, transcribe, append transcripts.

        Returns the transcripts added. Failures are logged and swallowed.
        """
        if not self.recording_enabled:
            logger.debug("recording_ignored", call_id=local_id)
            return []

        added: list[TranscriptEntry] = []
        try:
            call = await self.store.get_call(local_id)
            if call is None:
                logger.warning("recording_unknown_call", call_id=local_id)
                return []

            async with self.locks(call.id):
                await self.store.update_call(call.id, CallPatch(recording_url=recording_url))

            audio, content_type = await self.telephony.fetch_recording(recording_url)
            fragments = await self.transcriber.transcribe(
                audio, content_type=content_type, language=call.language,
            )
            for fragment in fragments:
                entry = await self.store.add_transcript(call.id, fragment.text, fragment.confidence)
                added.append(entry)
                self.broadcaster.publish(
                    EventType.TRANSCRIPT_ADDED,
                    callId=call.id, text=entry.text, confidence=entry.confidence,
                )
            logger.info("recording_transcribed", call_id=call.id, fragments=len(added))

        except Exception as e:
            logger.error("recording_callback_failed", call_id=local_id, error=str(e))
        return added

    # ══════════════════════════════════════════════════════════
    #  QUERIES
    # ══════════════════════════════════════════════════════════

    async def list_calls(self, limit: int = 100, offset: int = 0) -> list[CallRecord]:
        limit = max(1, min(limit, self.settings.calls.list_limit_max))
        return await self.store.list_calls(limit=limit, offset=max(0, offset))

    async def get_call(self, local_id: str) -> tuple[CallRecord, list[TranscriptEntry]]:
        call = await self.store.get_call(local_id)
        if call is None:
            raise NotFound(f"Call not found: {local_id}")
        return call, await self.store.get_transcripts(call.id)

    async def get_stats(self) -> CallStats:
        return await self.store.get_stats()

    # ── Internals ─────────────────────────────────────────────

    async def _find_call(self, call_ref: str) -> Optional[CallRecord]:
        """Provider IDs first, then local IDs."""
        if not call_ref:
            return None
        call = await self.store.get_call_by_provider_id(call_ref)
        if call is None:
            call = await self.store.get_call(call_ref)
        return call


def _as_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None

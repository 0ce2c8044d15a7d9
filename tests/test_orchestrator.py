"""
Tests for the call lifecycle orchestrator.

Covers:
  - TriggerCall validation, success and transport failure
  - Answer / DTMF / provider event callbacks, including unknown IDs,
    replays and out-of-order delivery
  - DTMF attempt limit and transfer
  - Recording transcription
  - Read-only queries
  - End-to-end verification scenarios
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from config.settings import TranscriptionConfig
from core.errors import NotFound, ProviderError, StoreError, ValidationError
from core.flows import CollectDigits, Connect, Record, Speak
from channels.transcription.deepgram_client import TranscriptFragment
from models.schemas import CallRecord, CallStatus

from conftest import PROVIDER_CALL_ID


def published(broadcaster) -> list[tuple[str, dict]]:
    return [(c.args[0].value, c.kwargs) for c in broadcaster.publish.call_args_list]


def published_types(broadcaster) -> list[str]:
    return [t for t, _ in published(broadcaster)]


async def _ringing_call(store, call: CallRecord) -> CallRecord:
    await store.create_call(call.model_copy(update={
        "provider_call_id": PROVIDER_CALL_ID, "status": CallStatus.RINGING,
    }))
    return await store.get_call(call.id)


# ──────────────────────────────────────────────────────────────
#  TriggerCall
# ──────────────────────────────────────────────────────────────

class TestTriggerCall:
    @pytest.mark.asyncio
    async def test_places_call_and_records_provider_id(self, orchestrator, store, telephony):
        local_id, provider_id = await orchestrator.trigger_call("+15551234567", "1234")

        assert provider_id == PROVIDER_CALL_ID
        call = await store.get_call(local_id)
        assert call.status == CallStatus.RINGING
        assert call.provider_call_id == PROVIDER_CALL_ID
        assert call.otp_code == "1234"

        kwargs = telephony.initiate_call.call_args.kwargs
        assert kwargs["to"] == "+15551234567"
        assert kwargs["answer_url"] == f"https://otp.example.test/calls/{local_id}/answer-callback"
        assert kwargs["event_url"] == "https://otp.example.test/calls/event-callback"

    @pytest.mark.asyncio
    async def test_record_is_initiated_while_dialing(self, orchestrator, store, telephony):
        seen = []

        async def initiate(to, answer_url, event_url):
            local_id = answer_url.split("/calls/")[1].split("/")[0]
            seen.append((await store.get_call(local_id)).status)
            return {"sid": PROVIDER_CALL_ID}

        telephony.initiate_call.side_effect = initiate
        await orchestrator.trigger_call("+15551234567", "1234")
        assert seen == [CallStatus.INITIATED]

    @pytest.mark.asyncio
    async def test_call_initiated_published_once(self, orchestrator, broadcaster):
        local_id, _ = await orchestrator.trigger_call("+15551234567", "1234")
        events = published(broadcaster)
        assert [t for t, _ in events] == ["call_initiated"]
        assert events[0][1]["callId"] == local_id
        assert events[0][1]["phoneNumber"] == "+15551234567"

    @pytest.mark.asyncio
    async def test_default_language_and_transfer(self, orchestrator, store):
        local_id, _ = await orchestrator.trigger_call(
            " +15551234567 ", "1234", transfer_number="+15557654321",
        )
        call = await store.get_call(local_id)
        assert call.language == "en-US"
        assert call.phone_number == "+15551234567"
        assert call.transfer_number == "+15557654321"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone,otp", [
        ("", "1234"),
        ("+15551234567", ""),
        ("   ", "1234"),
        ("+15551234567", "   "),
        (None, "1234"),
    ])
    async def test_blank_input_rejected(self, orchestrator, store, telephony, phone, otp):
        with pytest.raises(ValidationError):
            await orchestrator.trigger_call(phone, otp)
        telephony.initiate_call.assert_not_called()
        assert await store.list_calls() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("otp", ["12a4", "12-34", "١٢٣٤", "*123#"])
    async def test_non_digit_otp_rejected(self, orchestrator, telephony, otp):
        with pytest.raises(ValidationError):
            await orchestrator.trigger_call("+15551234567", otp)
        telephony.initiate_call.assert_not_called()

    @pytest.mark.asyncio
    async def test_transport_failure_marks_failed(self, orchestrator, store, telephony, broadcaster):
        telephony.initiate_call.side_effect = RuntimeError("401 Unauthorized")

        with pytest.raises(ProviderError) as exc_info:
            await orchestrator.trigger_call("+15551234567", "1234")

        assert exc_info.value.status_code == 502
        assert "401" in exc_info.value.detail

        [call] = await store.list_calls()
        assert call.status == CallStatus.FAILED
        assert call.ended_at is not None
        assert call.provider_call_id is None
        assert published(broadcaster) == [
            ("call_event", {"callId": call.id, "event": "failed"}),
        ]

    @pytest.mark.asyncio
    async def test_transport_timeout(self, orchestrator, store, telephony, settings):
        settings.calls.trigger_timeout_s = 0.01

        async def slow(**kwargs):
            await asyncio.sleep(1)

        telephony.initiate_call.side_effect = slow
        with pytest.raises(ProviderError) as exc_info:
            await orchestrator.trigger_call("+15551234567", "1234")
        assert exc_info.value.detail == "timed out"
        [call] = await store.list_calls()
        assert call.status == CallStatus.FAILED

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, orchestrator, store):
        store.create_call = AsyncMock(side_effect=StoreError("disk full"))
        with pytest.raises(StoreError):
            await orchestrator.trigger_call("+15551234567", "1234")

    @pytest.mark.asyncio
    async def test_answer_before_trigger_returns(self, orchestrator, store, telephony):
        """The answer callback can land before initiate_call returns."""
        async def initiate(to, answer_url, event_url):
            local_id = answer_url.split("/calls/")[1].split("/")[0]
            asyncio.get_running_loop().create_task(orchestrator.handle_answered(local_id))
            await asyncio.sleep(0.01)
            return {"sid": PROVIDER_CALL_ID}

        telephony.initiate_call.side_effect = initiate
        local_id, _ = await orchestrator.trigger_call("+15551234567", "1234")

        call = await store.get_call(local_id)
        assert call.status == CallStatus.ANSWERED
        assert call.provider_call_id == PROVIDER_CALL_ID


# ──────────────────────────────────────────────────────────────
#  HandleAnswered
# ──────────────────────────────────────────────────────────────

class TestHandleAnswered:
    @pytest.mark.asyncio
    async def test_unknown_call_returns_not_found(self, orchestrator, broadcaster):
        flow = await orchestrator.handle_answered("does-not-exist")
        assert len(flow) == 1
        assert flow[0].text == "Call not found."
        assert published(broadcaster) == []

    @pytest.mark.asyncio
    async def test_marks_answered_and_delivers_code(self, orchestrator, store, broadcaster, sample_call):
        await _ringing_call(store, sample_call)

        flow = await orchestrator.handle_answered(sample_call.id)

        call = await store.get_call(sample_call.id)
        assert call.status == CallStatus.ANSWERED
        assert call.answered_at is not None
        assert [type(i) for i in flow] == [Speak, CollectDigits]
        assert "4, 8, 2, 1" in flow[0].text
        assert published_types(broadcaster) == ["call_answered"]

    @pytest.mark.asyncio
    async def test_idempotent(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_answered(sample_call.id)
        first = await store.get_call(sample_call.id)
        await orchestrator.handle_answered(sample_call.id)
        second = await store.get_call(sample_call.id)
        assert second.answered_at == first.answered_at
        assert second.status == CallStatus.ANSWERED

    @pytest.mark.asyncio
    async def test_provider_answered_first(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "answered")
        answered_at = (await store.get_call(sample_call.id)).answered_at

        await orchestrator.handle_answered(sample_call.id)
        assert (await store.get_call(sample_call.id)).answered_at == answered_at

    @pytest.mark.asyncio
    async def test_recording_prepended_when_enabled(self, orchestrator, store, sample_call, settings):
        settings.transcription = TranscriptionConfig(enabled=True, api_key="dg-test-key")
        orchestrator.transcriber = AsyncMock()
        await _ringing_call(store, sample_call)

        flow = await orchestrator.handle_answered(sample_call.id)
        assert isinstance(flow[0], Record)

    @pytest.mark.asyncio
    async def test_store_failure_returns_apology(self, orchestrator, store):
        store.get_call = AsyncMock(side_effect=StoreError("connection reset"))
        flow = await orchestrator.handle_answered("3f2a9c0d1b7e4a55")
        assert len(flow) == 1
        assert flow[0].text == "An error occurred."


# ──────────────────────────────────────────────────────────────
#  HandleDtmf
# ──────────────────────────────────────────────────────────────

class TestHandleDtmf:
    @pytest.mark.asyncio
    async def test_correct_digits_by_provider_id(self, orchestrator, store, broadcaster, sample_call):
        await _ringing_call(store, sample_call)

        flow = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821")

        call = await store.get_call(sample_call.id)
        assert call.verified is True
        assert call.dtmf_input == "4821"
        assert call.dtmf_received_at is not None
        assert call.verified_at is not None
        assert call.dtmf_attempts == 1
        assert len(flow) == 1 and isinstance(flow[0], Speak)

        [(event, payload)] = published(broadcaster)
        assert event == "dtmf_received"
        assert payload["isValid"] is True
        assert payload["callId"] == sample_call.id

    @pytest.mark.asyncio
    async def test_falls_back_to_local_id(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_dtmf(sample_call.id, "4821")
        assert (await store.get_call(sample_call.id)).verified is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("digits", ["04821", "482", "0000", "", "4821 ", " 4821"])
    async def test_exact_match_required(self, orchestrator, store, sample_call, digits):
        await _ringing_call(store, sample_call)
        flow = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, digits)
        assert (await store.get_call(sample_call.id)).verified is False
        assert [type(i) for i in flow] == [Speak, CollectDigits]

    @pytest.mark.asyncio
    async def test_unknown_call_returns_not_found(self, orchestrator, broadcaster):
        flow = await orchestrator.handle_dtmf("nope", "1234")
        assert flow[0].text == "Call not found."
        assert published(broadcaster) == []

    @pytest.mark.asyncio
    async def test_never_writes_status(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821")
        assert (await store.get_call(sample_call.id)).status == CallStatus.RINGING

    @pytest.mark.asyncio
    async def test_after_completed_does_not_revive(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "completed", {"duration": "42"})

        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821")

        call = await store.get_call(sample_call.id)
        assert call.status == CallStatus.COMPLETED
        assert call.dtmf_input == "4821"
        assert call.verified is True

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        flows = [await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000") for _ in range(3)]

        assert isinstance(flows[0][-1], CollectDigits)
        assert isinstance(flows[1][-1], CollectDigits)
        assert len(flows[2]) == 1 and isinstance(flows[2][0], Speak)
        assert (await store.get_call(sample_call.id)).dtmf_attempts == 3

    @pytest.mark.asyncio
    async def test_attempts_exhausted_transfers(self, orchestrator, store, sample_call, settings):
        settings.calls.max_dtmf_attempts = 1
        await _ringing_call(store, sample_call.model_copy(update={"transfer_number": "+15557654321"}))

        flow = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000")
        assert isinstance(flow[-1], Connect)
        assert flow[-1].number == "+15557654321"
        assert flow[-1].from_number == "14155550100"

    @pytest.mark.asyncio
    async def test_correct_on_last_attempt_succeeds(self, orchestrator, store, sample_call, settings):
        settings.calls.max_dtmf_attempts = 2
        await _ringing_call(store, sample_call)
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000")
        flow = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821")
        assert flow[0].text == "Thank you! Your code is verified."

    @pytest.mark.asyncio
    async def test_concurrent_dtmf_counts_every_attempt(self, orchestrator, store, sample_call, settings):
        settings.calls.max_dtmf_attempts = 10
        await _ringing_call(store, sample_call)
        await asyncio.gather(*[
            orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000") for _ in range(5)
        ])
        assert (await store.get_call(sample_call.id)).dtmf_attempts == 5
        assert len(orchestrator.locks) == 0

    @pytest.mark.asyncio
    async def test_redelivered_input_counts_once(self, orchestrator, store, broadcaster, sample_call, settings):
        settings.calls.max_dtmf_attempts = 2
        await _ringing_call(store, sample_call)
        key = f"{PROVIDER_CALL_ID}:2026-10-18T09:15:02.113Z"

        first = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000", key)
        replay = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000", key)

        call = await store.get_call(sample_call.id)
        assert call.dtmf_attempts == 1
        assert call.dtmf_event_key == key
        assert [type(i) for i in first] == [Speak, CollectDigits]
        assert [type(i) for i in replay] == [Speak, CollectDigits]
        assert published_types(broadcaster) == ["dtmf_received"]

    @pytest.mark.asyncio
    async def test_redelivered_correct_input_still_confirms(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821", "k1")
        flow = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821", "k1")
        assert flow[0].text == "Thank you! Your code is verified."
        assert (await store.get_call(sample_call.id)).dtmf_attempts == 1

    @pytest.mark.asyncio
    async def test_distinct_deliveries_each_count(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000", "k1")
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000", "k2")
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000")
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "0000")
        assert (await store.get_call(sample_call.id)).dtmf_attempts == 4

    @pytest.mark.asyncio
    async def test_held_lock_does_not_block_other_calls(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        other = CallRecord(id="b0c1d2e3f4a5b6c7", phone_number="+15559876543", otp_code="9999")
        await store.create_call(other)

        async with orchestrator.locks(other.id):
            blocked = asyncio.create_task(orchestrator.handle_dtmf(other.id, "9999"))
            flow = await asyncio.wait_for(orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821"), timeout=1)
            assert flow[0].text == "Thank you! Your code is verified."
            assert not blocked.done()

        other_flow = await asyncio.wait_for(blocked, timeout=1)
        assert other_flow[0].text == "Thank you! Your code is verified."
        assert (await store.get_call(other.id)).verified is True

    @pytest.mark.asyncio
    async def test_store_failure_returns_apology(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        store.update_call = AsyncMock(side_effect=StoreError("locked"))
        flow = await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821")
        assert flow[0].text == "An error occurred."


# ──────────────────────────────────────────────────────────────
#  HandleProviderEvent
# ──────────────────────────────────────────────────────────────

class TestHandleProviderEvent:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("event,expected", [
        ("started", CallStatus.IN_PROGRESS),
        ("answered", CallStatus.ANSWERED),
        ("completed", CallStatus.COMPLETED),
        ("failed", CallStatus.FAILED),
        ("rejected", CallStatus.REJECTED),
        ("unanswered", CallStatus.UNANSWERED),
        ("busy", CallStatus.BUSY),
        ("timeout", CallStatus.UNANSWERED),
        ("cancelled", CallStatus.FAILED),
    ])
    async def test_status_mapping(self, orchestrator, store, sample_call, event, expected):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, event)
        call = await store.get_call(sample_call.id)
        assert call.status == expected
        assert (call.ended_at is not None) == expected.is_terminal

    @pytest.mark.asyncio
    async def test_completed_records_duration(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "completed", {"duration": "37"})
        call = await store.get_call(sample_call.id)
        assert call.duration == 37

    @pytest.mark.asyncio
    async def test_completed_replay_is_idempotent(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "completed", {"duration": "37"})
        first = await store.get_call(sample_call.id)

        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "completed", {"duration": "99"})
        second = await store.get_call(sample_call.id)

        assert second == first

    @pytest.mark.asyncio
    async def test_terminal_is_absorbing(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "busy")
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "answered")
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "completed")
        assert (await store.get_call(sample_call.id)).status == CallStatus.BUSY

    @pytest.mark.asyncio
    async def test_late_started_does_not_regress(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "answered")
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "started")
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "ringing")
        assert (await store.get_call(sample_call.id)).status == CallStatus.ANSWERED

    @pytest.mark.asyncio
    async def test_unknown_status_ignored_but_published(self, orchestrator, store, broadcaster, sample_call):
        await _ringing_call(store, sample_call)
        before = await store.get_call(sample_call.id)

        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "machine")

        assert await store.get_call(sample_call.id) == before
        [(event, payload)] = published(broadcaster)
        assert event == "call_event"
        assert payload["event"] == "machine"
        assert payload["callId"] == sample_call.id

    @pytest.mark.asyncio
    async def test_unknown_call_is_noop(self, orchestrator, broadcaster):
        result = await orchestrator.handle_provider_event("ffffffff-0000", "completed")
        assert result is None
        [(event, payload)] = published(broadcaster)
        assert event == "call_event"
        assert payload["callId"] is None
        assert payload["providerCallId"] == "ffffffff-0000"

    @pytest.mark.asyncio
    async def test_errors_swallowed(self, orchestrator, store, broadcaster):
        store.get_call_by_provider_id = AsyncMock(side_effect=StoreError("gone"))
        result = await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "completed")
        assert result is None
        assert published_types(broadcaster) == ["call_event"]

    @pytest.mark.asyncio
    async def test_status_case_insensitive(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "COMPLETED")
        assert (await store.get_call(sample_call.id)).status == CallStatus.COMPLETED


# ──────────────────────────────────────────────────────────────
#  HandleRecording
# ──────────────────────────────────────────────────────────────

class TestHandleRecording:
    @pytest.fixture
    def transcriber(self):
        t = AsyncMock()
        t.transcribe.return_value = [
            TranscriptFragment(text="your verification code is four eight two one", confidence=0.93),
        ]
        return t

    @pytest.fixture
    def recording_orchestrator(self, orchestrator, settings, transcriber):
        settings.transcription = TranscriptionConfig(enabled=True, api_key="dg-test-key")
        orchestrator.transcriber = transcriber
        return orchestrator

    @pytest.mark.asyncio
    async def test_disabled_is_noop(self, orchestrator, store, telephony, sample_call):
        await _ringing_call(store, sample_call)
        added = await orchestrator.handle_recording(sample_call.id, "https://api.nexmo.com/v1/files/r1")
        assert added == []
        telephony.fetch_recording.assert_not_called()
        assert (await store.get_call(sample_call.id)).recording_url is None

    @pytest.mark.asyncio
    async def test_transcribes_and_stores(self, recording_orchestrator, store, telephony,
                                          transcriber, broadcaster, sample_call):
        await _ringing_call(store, sample_call)
        url = "https://api.nexmo.com/v1/files/r1"

        added = await recording_orchestrator.handle_recording(sample_call.id, url)

        assert len(added) == 1
        assert (await store.get_call(sample_call.id)).recording_url == url
        telephony.fetch_recording.assert_awaited_once_with(url)
        transcriber.transcribe.assert_awaited_once_with(
            b"ID3fake-mp3", content_type="audio/mpeg", language="en-US",
        )
        transcripts = await store.get_transcripts(sample_call.id)
        assert [t.text for t in transcripts] == ["your verification code is four eight two one"]
        assert published_types(broadcaster) == ["transcript_added"]

    @pytest.mark.asyncio
    async def test_transcription_failure_swallowed(self, recording_orchestrator, store,
                                                   transcriber, sample_call):
        await _ringing_call(store, sample_call)
        transcriber.transcribe.side_effect = RuntimeError("deepgram 500")
        added = await recording_orchestrator.handle_recording(sample_call.id, "https://x/r")
        assert added == []
        assert (await store.get_call(sample_call.id)).recording_url == "https://x/r"

    @pytest.mark.asyncio
    async def test_unknown_call(self, recording_orchestrator, telephony):
        assert await recording_orchestrator.handle_recording("nope", "https://x/r") == []
        telephony.fetch_recording.assert_not_called()


# ──────────────────────────────────────────────────────────────
#  Queries
# ──────────────────────────────────────────────────────────────

class TestQueries:
    @pytest.mark.asyncio
    async def test_get_call_with_transcripts(self, orchestrator, store, sample_call):
        await store.create_call(sample_call)
        await store.add_transcript(sample_call.id, "hello", 0.8)
        call, transcripts = await orchestrator.get_call(sample_call.id)
        assert call.id == sample_call.id
        assert [t.text for t in transcripts] == ["hello"]

    @pytest.mark.asyncio
    async def test_get_call_not_found(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.get_call("missing")

    @pytest.mark.asyncio
    async def test_list_calls_clamps_limit(self, orchestrator, store, settings):
        settings.calls.list_limit_max = 2
        for i in range(3):
            await store.create_call(CallRecord(phone_number=f"+1555000000{i}", otp_code="1234"))
        assert len(await orchestrator.list_calls(limit=50)) == 2
        assert len(await orchestrator.list_calls(limit=0)) == 1

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator, store, sample_call):
        await _ringing_call(store, sample_call)
        await orchestrator.handle_dtmf(PROVIDER_CALL_ID, "4821")
        await orchestrator.handle_provider_event(PROVIDER_CALL_ID, "completed", {"duration": 20})
        stats = await orchestrator.get_stats()
        assert stats.total_calls == 1
        assert stats.completed_calls == 1
        assert stats.verified_calls == 1
        assert stats.avg_duration == 20


# ──────────────────────────────────────────────────────────────
#  End-to-end
# ──────────────────────────────────────────────────────────────

class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_correct_code(self, orchestrator, store, broadcaster):
        local_id, provider_id = await orchestrator.trigger_call("+15551234567", "1234")
        await orchestrator.handle_provider_event(provider_id, "started")
        answer_flow = await orchestrator.handle_answered(local_id)
        assert isinstance(answer_flow[-1], CollectDigits)

        flow = await orchestrator.handle_dtmf(provider_id, "1234")
        await orchestrator.handle_provider_event(provider_id, "completed", {"duration": 18})

        call = await store.get_call(local_id)
        assert call.verified is True
        assert call.status == CallStatus.COMPLETED
        assert len(flow) == 1 and isinstance(flow[0], Speak)
        assert published_types(broadcaster) == [
            "call_initiated", "call_event", "call_answered", "dtmf_received", "call_event",
        ]

    @pytest.mark.asyncio
    async def test_incorrect_code(self, orchestrator, store):
        local_id, provider_id = await orchestrator.trigger_call("+15551234567", "1234")
        await orchestrator.handle_answered(local_id)

        flow = await orchestrator.handle_dtmf(provider_id, "0000")

        assert (await store.get_call(local_id)).verified is False
        assert [type(i) for i in flow] == [Speak, CollectDigits]

"""
Vonage Voice Client: places outbound OTP calls.

Call flow:
1. initiate_call() → Vonage dials the recipient via PSTN
2. On answer, Vonage GETs answer_url and executes the returned NCCO
3. DTMF input is POSTed to the eventUrl of the NCCO input action
4. Status events (started, ringing, answered, completed, ...) arrive at event_url

Auth: application JWT (RS256) signed with the application's private key,
regenerated per request.

API Docs: https://developer.vonage.com/en/api/voice
"""
from __future__ import annotations

import time
import uuid
import structlog
from pathlib import Path
from typing import Any, Optional

import httpx
from jose import jwt
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger()

JWT_TTL_S = 900


class VonageClient:
    """Vonage Voice API client."""

    def __init__(
        self,
        application_id: str,
        from_number: str,
        private_key: str = "",
        private_key_path: str = "",
        api_base_url: str = "https://api.nexmo.com",
        timeout_s: float = 10.0,
    ):
        self.application_id = application_id
        self.from_number = from_number
        self.base_url = api_base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._private_key = private_key
        self._private_key_path = private_key_path
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s, connect=5.0),
            )
        return self._client

    def _load_private_key(self) -> str:
        if not self._private_key and self._private_key_path:
            self._private_key = Path(self._private_key_path).read_text()
        if not self._private_key:
            raise RuntimeError("Vonage private key is not configured")
        return self._private_key

    def generate_jwt(self) -> str:
        now = int(time.time())
        claims = {
            "application_id": self.application_id,
            "iat": now,
            "exp": now + JWT_TTL_S,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(claims, self._load_private_key(), algorithm="RS256")

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.generate_jwt()}"}

    # Only connection failures are retried: the request never reached
    # Vonage, so a second attempt cannot place a duplicate call.
    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.request(
            method, f"{self.base_url}{path}", headers=self._auth_headers(), **kwargs,
        )
        if resp.status_code >= 400:
            logger.error(
                "vonage_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            resp.raise_for_status()
        return resp.json() if resp.content else {}

    # ── Call Management ─────────────────────────────────────

    async def initiate_call(self, to: str, answer_url: str, event_url: str) -> dict[str, Any]:
        """
        Place an outbound call.

        Args:
            to: Destination phone number (E.164, "+" optional)
            answer_url: URL Vonage GETs for the NCCO once the call is answered
            event_url: URL Vonage POSTs call status events to

        Returns:
            {"sid": "<vonage uuid>", "status": "...", "to": ..., "from": ..., "provider": "vonage"}
        """
        payload = {
            "to": [{"type": "phone", "number": to.lstrip("+")}],
            "from": {"type": "phone", "number": self.from_number.lstrip("+")},
            "answer_url": [answer_url],
            "answer_method": "GET",
            "event_url": [event_url],
            "event_method": "POST",
        }

        logger.info("vonage_initiate_call", to=to, answer_url=answer_url)
        result = await self._request("POST", "/v1/calls", json=payload)

        call_uuid = result.get("uuid", "")
        if not call_uuid:
            raise RuntimeError("Vonage response did not include a call uuid")

        return {
            "sid": call_uuid,
            "status": result.get("status", "started"),
            "conversation_uuid": result.get("conversation_uuid", ""),
            "to": to,
            "from": self.from_number,
            "provider": "vonage",
        }

    async def fetch_recording(self, recording_url: str) -> tuple[bytes, str]:
        """Download a call recording. Returns (audio bytes, content type)."""
        client = await self._get_client()
        resp = await client.get(recording_url, headers=self._auth_headers())
        if resp.status_code >= 400:
            logger.error("vonage_recording_fetch_error",
                         status=resp.status_code, url=recording_url)
            resp.raise_for_status()
        return resp.content, resp.headers.get("content-type", "audio/mpeg")

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_event_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Vonage event webhook.

        Vonage sends:
          - uuid, conversation_uuid, status, direction, from, to,
            timestamp, and on completion duration, rate, price, etc.
        """
        duration = payload.get("duration")
        try:
            duration = int(duration) if duration not in (None, "") else None
        except (TypeError, ValueError):
            duration = None

        return {
            "call_id": payload.get("uuid") or payload.get("providerCallId") or "",
            "status": str(payload.get("status") or "").lower(),
            "duration": duration,
            "direction": payload.get("direction", ""),
            "conversation_uuid": payload.get("conversation_uuid", ""),
            "timestamp": payload.get("timestamp", ""),
            "raw": payload,
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

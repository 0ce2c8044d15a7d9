"""
Deepgram Client: transcribes call recordings.

Uses the pre-recorded /listen endpoint: the recording is downloaded from
the provider once the call ends and posted here as raw audio. Each channel
of the recording yields at most one fragment.

API Docs: https://developers.deepgram.com/reference/listen-file
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger()


@dataclass
class TranscriptFragment:
    text: str
    confidence: Optional[float] = None


class DeepgramClient:
    """Deepgram REST client for pre-recorded audio."""

    def __init__(
        self,
        api_key: str,
        model: str = "nova-2",
        base_url: str = "https://api.deepgram.com/v1",
        timeout_s: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Token {self.api_key}"},
                timeout=httpx.Timeout(self.timeout_s, connect=5.0),
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def transcribe(
        self, audio: bytes, content_type: str = "audio/mpeg", language: str = "en-US",
    ) -> list[TranscriptFragment]:
        """Transcribe ``audio``. Returns one fragment per non-empty channel."""
        client = await self._get_client()
        params = {
            "model": self.model,
            "language": language,
            "smart_format": "true",
            "punctuate": "true",
        }
        resp = await client.post(
            f"{self.base_url}/listen",
            params=params,
            content=audio,
            headers={"Content-Type": content_type},
        )
        if resp.status_code >= 400:
            logger.error("deepgram_api_error", status=resp.status_code, body=resp.text[:500])
            resp.raise_for_status()
        return self.parse_response(resp.json())

    @staticmethod
    def parse_response(data: dict[str, Any]) -> list[TranscriptFragment]:
        fragments = []
        for channel in data.get("results", {}).get("channels", []):
            alternatives = channel.get("alternatives") or []
            if not alternatives:
                continue
            best = alternatives[0]
            text = (best.get("transcript") or "").strip()
            if text:
                fragments.append(TranscriptFragment(text=text, confidence=best.get("confidence")))
        return fragments

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

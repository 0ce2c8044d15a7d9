"""
Telephony Provider Factory: instantiates the call transport from config.

The orchestrator depends only on the TelephonyClient protocol:
  - initiate_call(to, answer_url, event_url) → {sid, status, provider}
  - fetch_recording(url) → (bytes, content_type)
  - parse_event_webhook(payload) → normalized dict
  - close() → clean up HTTP clients

Vonage is the only provider shipped; tests substitute an AsyncMock.
"""
from __future__ import annotations

import structlog
from typing import Any, Protocol, runtime_checkable

from config.settings import VonageConfig

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  PROTOCOL: Common interface all providers implement
# ══════════════════════════════════════════════════════════════

@runtime_checkable
class TelephonyClient(Protocol):

    async def initiate_call(self, to: str, answer_url: str, event_url: str) -> dict[str, Any]:
        """
        Place an outbound call.

        Returns:
            {"sid": "...", "status": "...", "to": "...", "from": "...", "provider": "..."}
        """
        ...

    async def fetch_recording(self, recording_url: str) -> tuple[bytes, str]:
        ...

    @staticmethod
    def parse_event_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Returns:
            {"call_id": str, "status": str, "duration": int | None, "raw": dict, ...}
        """
        ...

    async def close(self) -> None:
        ...


# ══════════════════════════════════════════════════════════════
#  FACTORY
# ══════════════════════════════════════════════════════════════

class TelephonyFactory:
    """
    Usage:
        client = TelephonyFactory.create(settings.vonage)
        result = await client.initiate_call(to="+15551234567", ...)
    """

    _PROVIDERS = ("vonage",)

    @staticmethod
    def create(config: VonageConfig, provider: str = "vonage") -> TelephonyClient:
        """
        Raises:
            ValueError: If provider is not supported.
        """
        if provider == "vonage":
            from channels.telephony.vonage_client import VonageClient
            if not config.configured:
                logger.warning("telephony_not_configured", provider="vonage")
            client = VonageClient(
                application_id=config.application_id,
                from_number=config.from_number,
                private_key=config.private_key,
                private_key_path=config.private_key_path,
                api_base_url=config.api_base_url,
                timeout_s=config.timeout_s,
            )
            logger.info("telephony_client_created", provider="vonage")
            return client

        raise ValueError(
            f"Unsupported telephony provider: {provider}. "
            f"Supported: {', '.join(TelephonyFactory._PROVIDERS)}"
        )

    @staticmethod
    def get_webhook_parser(provider: str = "vonage"):
        if provider == "vonage":
            from channels.telephony.vonage_client import VonageClient
            return VonageClient.parse_event_webhook
        raise ValueError(f"No webhook parser for: {provider}")

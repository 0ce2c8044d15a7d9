"""
Error taxonomy for call orchestration.

  ValidationError  bad or missing input, rendered as 400
  ProviderError    telephony / transcription transport failure, rendered as 502
  NotFound         unknown call, 404 on the REST API; provider callbacks
                   turn it into a benign spoken flow instead
  StoreError       persistence failure, 500 for trigger requests; swallowed
                   and logged inside provider callbacks
"""
from __future__ import annotations

from typing import Any, Optional


class CallError(Exception):
    """Base exception for all call operations."""

    status_code: int = 500

    def __init__(self, message: str, detail: Optional[Any] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.detail is not None:
            body["details"] = self.detail
        return body


class ValidationError(CallError):
    status_code = 400


class ProviderError(CallError):
    status_code = 502

    def __init__(self, message: str, detail: Optional[Any] = None, provider: str = ""):
        self.provider = provider
        super().__init__(message, detail)


class NotFound(CallError):
    status_code = 404


class StoreError(CallError):
    status_code = 500

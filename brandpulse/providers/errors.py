"""Provider failure taxonomy.

Classification prefers structured signals: the HTTP status code, the error
status string in the provider's error body, and typed transport exceptions.
``classify_message_legacy`` keeps the old message-substring heuristic for the
rare case where none of those is available.
"""
from __future__ import annotations

import asyncio
from typing import Any

import httpx
import openai

from brandpulse.models.domain import FailureKind

RETRYABLE_KINDS = frozenset(
    {FailureKind.TIMEOUT, FailureKind.RATE_LIMIT, FailureKind.SERVER_ERROR}
)

TRUNCATION_FINISH_REASONS = frozenset({"MAX_TOKENS", "length", "max_output_tokens"})

# google.rpc.Code names returned in Gemini error bodies
_RPC_STATUS_KINDS = {
    "RESOURCE_EXHAUSTED": FailureKind.RATE_LIMIT,
    "DEADLINE_EXCEEDED": FailureKind.TIMEOUT,
    "UNAVAILABLE": FailureKind.SERVER_ERROR,
    "INTERNAL": FailureKind.SERVER_ERROR,
    "UNAUTHENTICATED": FailureKind.AUTH_ERROR,
    "PERMISSION_DENIED": FailureKind.AUTH_ERROR,
}

# OpenAI error.code / error.type values
_OPENAI_CODE_KINDS = {
    "rate_limit_exceeded": FailureKind.RATE_LIMIT,
    "insufficient_quota": FailureKind.RATE_LIMIT,
    "invalid_api_key": FailureKind.AUTH_ERROR,
    "context_length_exceeded": FailureKind.TOKEN_LIMIT,
    "server_error": FailureKind.SERVER_ERROR,
}


class ProviderError(Exception):
    """A classified provider failure."""

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        *,
        provider: str = "",
        status_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        self.kind = kind
        self.provider = provider
        self.status_code = status_code
        self.attempts = attempts
        prefix = f"{provider} " if provider else ""
        status = f" (HTTP {status_code})" if status_code else ""
        super().__init__(f"{prefix}{kind.value}{status}: {message}")
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


def classify_status(status_code: int | None, body: Any = None) -> FailureKind:
    """Map an HTTP status plus the provider error body to a failure kind."""
    body_kind = _classify_error_body(body)
    if body_kind is not None:
        return body_kind
    if status_code is None:
        return FailureKind.UNKNOWN
    if status_code == 429:
        return FailureKind.RATE_LIMIT
    if status_code in (401, 403):
        return FailureKind.AUTH_ERROR
    if status_code in (408, 504):
        return FailureKind.TIMEOUT
    if status_code >= 500:
        return FailureKind.SERVER_ERROR
    return FailureKind.UNKNOWN


def _classify_error_body(body: Any) -> FailureKind | None:
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    status = error.get("status")
    if isinstance(status, str) and status in _RPC_STATUS_KINDS:
        return _RPC_STATUS_KINDS[status]
    for key in ("code", "type"):
        value = error.get(key)
        if isinstance(value, str) and value in _OPENAI_CODE_KINDS:
            return _OPENAI_CODE_KINDS[value]
    return None


def classify_exception(exc: BaseException) -> FailureKind:
    """Classify a transport or SDK exception without looking at its message text."""
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, openai.APITimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        body: Any = None
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        return classify_status(exc.response.status_code, body)
    if isinstance(exc, openai.APIStatusError):
        return classify_status(exc.status_code, {"error": _openai_error_dict(exc.body)})
    if isinstance(exc, (httpx.TransportError, openai.APIConnectionError)):
        # connection reset, DNS failure, remote protocol error
        return FailureKind.SERVER_ERROR
    return classify_message_legacy(str(exc))


def _openai_error_dict(body: Any) -> dict[str, Any] | None:
    if isinstance(body, dict):
        nested = body.get("error")
        return nested if isinstance(nested, dict) else body
    return None


def classify_finish(finish_reason: str | None) -> FailureKind:
    """Kind for text that failed to parse, given the model's finish reason."""
    if finish_reason and finish_reason in TRUNCATION_FINISH_REASONS:
        return FailureKind.TOKEN_LIMIT
    return FailureKind.PARSE_ERROR


def classify_message_legacy(message: str) -> FailureKind:
    """Deprecated: substring heuristic for errors that carry nothing but text.

    Only reached for exceptions that are neither typed transport errors nor
    status errors. The word "token" is deliberately not mapped to
    ``token_limit`` because auth failures ("invalid token") share it.
    """
    lowered = (message or "").lower()
    if "timeout" in lowered or "timed out" in lowered:
        return FailureKind.TIMEOUT
    if "429" in lowered or "rate limit" in lowered or "quota" in lowered:
        return FailureKind.RATE_LIMIT
    if "401" in lowered or "403" in lowered or "unauthorized" in lowered or "forbidden" in lowered:
        return FailureKind.AUTH_ERROR
    if any(code in lowered for code in ("500", "502", "503", "504")):
        return FailureKind.SERVER_ERROR
    if "json" in lowered or "parse" in lowered:
        return FailureKind.PARSE_ERROR
    return FailureKind.UNKNOWN

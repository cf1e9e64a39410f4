from __future__ import annotations

import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from brandpulse.models.domain import Citation
from brandpulse.providers.errors import ProviderError
from brandpulse.providers.retry import RetryPolicy
from brandpulse.services import logger as log_service


@dataclass
class CallOptions:
    model: str | None = None
    grounding: bool = True
    json_mode: bool = False
    temperature: float | None = None
    max_output_tokens: int | None = None
    label: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    grounded_citations: tuple[Citation, ...] = ()
    finish_reason: str | None = None
    model: str = ""
    request_id: str = ""


class BaseProvider(ABC):
    """Uniform call contract over one upstream text-generation API.

    ``call`` returns a ``ProviderResponse`` or raises ``ProviderError``.
    Request ids are scoped to the provider instance.
    """

    name: str = "base"

    def __init__(self, retry_policy: RetryPolicy | None = None):
        self.retry_policy = retry_policy
        self._sequence = itertools.count(1)

    def next_request_id(self) -> str:
        return f"{self.name}-{next(self._sequence)}"

    @abstractmethod
    async def call(
        self,
        prompt: str,
        api_key: str,
        options: CallOptions | None = None,
    ) -> ProviderResponse:
        """Send ``prompt`` and return text plus any grounded citations."""

    async def _call_with_policy(
        self,
        policy: RetryPolicy,
        request_id: str,
        model: str,
        attempt_fn,
    ) -> ProviderResponse:
        """Run one logical call under ``policy``, logging every attempt."""
        attempt_counter = itertools.count(1)

        async def attempt() -> ProviderResponse:
            attempt_no = next(attempt_counter)
            started = time.monotonic()
            try:
                response = await attempt_fn(request_id)
            except Exception as exc:
                log_service.log_llm_call(
                    provider=self.name,
                    model=model,
                    request_id=request_id,
                    attempt=attempt_no,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    status="error",
                    error=str(exc)[:300],
                )
                raise
            log_service.log_llm_call(
                provider=self.name,
                model=model,
                request_id=request_id,
                attempt=attempt_no,
                duration_ms=int((time.monotonic() - started) * 1000),
                finish_reason=response.finish_reason,
                text_length=len(response.text or ""),
            )
            return response

        try:
            return await policy.run(attempt, label=request_id)
        except ProviderError as exc:
            exc.provider = self.name
            raise

"""Run Gemini and OpenAI side by side for one prompt."""
from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass

from loguru import logger

from brandpulse.config import settings
from brandpulse.models.domain import FailureKind, ProviderResult
from brandpulse.providers.base import BaseProvider, CallOptions
from brandpulse.providers.errors import ProviderError, classify_exception, classify_finish
from brandpulse.providers.gemini_provider import GeminiProvider
from brandpulse.providers.openai_provider import OpenAIProvider
from brandpulse.providers.retry import AsymmetricRecoveryPolicy, asymmetric_recovery_policy
from brandpulse.services.json_recovery import parse_json


@dataclass(frozen=True)
class ProviderCredentials:
    gemini_api_key: str = ""
    openai_api_key: str = ""

    @classmethod
    def from_settings(cls) -> "ProviderCredentials":
        return cls(gemini_api_key=settings.gemini_api_key, openai_api_key=settings.openai_api_key)

    @property
    def any_configured(self) -> bool:
        return bool(self.gemini_api_key or self.openai_api_key)


class ProviderPair:
    """Calls both providers concurrently and turns each answer into a ``ProviderResult``.

    Failures never propagate: every outcome, including a missing key or an
    unparseable answer, becomes a failed result with a ``FailureKind``.
    """

    def __init__(
        self,
        gemini: BaseProvider | None = None,
        openai: BaseProvider | None = None,
        recovery: AsymmetricRecoveryPolicy | None = None,
    ):
        self.gemini = gemini or GeminiProvider()
        self.openai = openai or OpenAIProvider()
        self.recovery = recovery or asymmetric_recovery_policy()

    async def call_both(
        self,
        prompt: str,
        credentials: ProviderCredentials,
        gemini_options: CallOptions | None = None,
        openai_options: CallOptions | None = None,
    ) -> tuple[ProviderResult, ProviderResult]:
        gemini_result, openai_result = await asyncio.gather(
            self.call_one(self.gemini, prompt, credentials.gemini_api_key, gemini_options),
            self.call_one(self.openai, prompt, credentials.openai_api_key, openai_options),
        )

        if (
            gemini_result.failure_kind != FailureKind.AUTH_ERROR
            and self.recovery.applies(gemini_result.succeeded, openai_result.succeeded)
        ):
            gemini_result = await self._recover(prompt, credentials.gemini_api_key, gemini_options, gemini_result)

        return gemini_result, openai_result

    async def _recover(
        self,
        prompt: str,
        api_key: str,
        options: CallOptions | None,
        failed: ProviderResult,
    ) -> ProviderResult:
        total_attempts = failed.attempts
        latest = failed
        for extra in range(1, self.recovery.extra_attempts + 1):
            logger.warning(
                f"Gemini unusable ({latest.failure_kind.value if latest.failure_kind else 'unknown'}) "
                f"while OpenAI succeeded, extra attempt {extra}/{self.recovery.extra_attempts} "
                f"in {self.recovery.delay:.1f}s"
            )
            await self.recovery.sleep(self.recovery.delay)
            latest = await self.call_one(self.gemini, prompt, api_key, options)
            total_attempts += latest.attempts
            if latest.succeeded:
                logger.info(f"Gemini recovered on extra attempt {extra}")
                break
        return dataclasses.replace(latest, attempts=total_attempts)

    async def call_one(
        self,
        provider: BaseProvider,
        prompt: str,
        api_key: str,
        options: CallOptions | None = None,
    ) -> ProviderResult:
        if not api_key:
            return ProviderResult.failed(
                provider.name,
                FailureKind.AUTH_ERROR,
                f"{provider.name} API key is not configured",
                attempts=0,
            )

        started = time.monotonic()
        try:
            response = await provider.call(prompt, api_key, options)
        except ProviderError as exc:
            return ProviderResult.failed(
                provider.name,
                exc.kind,
                str(exc),
                latency_ms=_elapsed_ms(started),
                attempts=exc.attempts,
            )
        except Exception as exc:
            logger.exception(f"Unexpected {provider.name} failure")
            return ProviderResult.failed(
                provider.name,
                classify_exception(exc),
                str(exc) or exc.__class__.__name__,
                latency_ms=_elapsed_ms(started),
            )

        latency_ms = _elapsed_ms(started)
        try:
            parsed = parse_json(response.text)
        except Exception:
            logger.exception(f"[{response.request_id}] JSON recovery crashed on {provider.name} response")
            parsed = None
        if parsed is None:
            kind = classify_finish(response.finish_reason)
            logger.warning(
                f"[{response.request_id}] {provider.name} returned unparseable text "
                f"({len(response.text or '')} chars, finish_reason={response.finish_reason}) -> {kind.value}"
            )
            return ProviderResult.failed(
                provider.name,
                kind,
                f"could not parse {provider.name} response",
                raw_text=response.text,
                latency_ms=latency_ms,
                finish_reason=response.finish_reason,
            )

        return ProviderResult(
            provider_name=provider.name,
            raw_text=response.text,
            parsed_document=parsed,
            grounded_citations=response.grounded_citations,
            succeeded=True,
            latency_ms=latency_ms,
            finish_reason=response.finish_reason,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

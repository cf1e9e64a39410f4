"""Retry policies shared by every provider.

``RetryPolicy`` bundles a classification function, a backoff schedule and an
attempt budget. ``AsymmetricRecoveryPolicy`` is the extra Gemini pass applied
on top of it when OpenAI answered but Gemini did not.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from loguru import logger

from brandpulse.config import settings
from brandpulse.models.domain import FailureKind
from brandpulse.providers.errors import (
    RETRYABLE_KINDS,
    ProviderError,
    classify_exception,
)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Classifier = Callable[[BaseException], FailureKind]
RetryPredicate = Callable[[BaseException, FailureKind], bool]


def status_code_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, ProviderError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def retry_on_http_error(exc: BaseException, _kind: FailureKind) -> bool:
    status = status_code_of(exc)
    return status is not None and status >= 400


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    rate_limit_base_delay: float = 5.0
    exponential: bool = True
    retry_on: frozenset[FailureKind] = RETRYABLE_KINDS
    retry_if: Optional[RetryPredicate] = None
    classify: Classifier = classify_exception
    sleep: Sleep = field(default=asyncio.sleep, compare=False)

    def delay_for(self, attempt: int, kind: FailureKind) -> float:
        """Delay after failed ``attempt`` (1-based) before the next one."""
        base = self.rate_limit_base_delay if kind == FailureKind.RATE_LIMIT else self.base_delay
        if not self.exponential:
            return base
        return base * (2 ** (attempt - 1))

    def should_retry(self, exc: BaseException, kind: FailureKind) -> bool:
        if self.retry_if is not None:
            return self.retry_if(exc, kind)
        return kind in self.retry_on

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "call") -> T:
        """Run ``operation`` until it succeeds, fails terminally or the budget is spent.

        Every failure surfaces as a ``ProviderError`` with ``attempts`` set.
        """
        attempts = max(self.max_attempts, 1)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                kind = self.classify(exc)
                error = _as_provider_error(exc, kind, attempt)
                if attempt >= attempts or not self.should_retry(exc, kind):
                    if attempt > 1:
                        logger.warning(f"[{label}] giving up after {attempt}/{attempts} attempts: {error}")
                    raise error from exc

                delay = self.delay_for(attempt, kind)
                logger.info(
                    f"[{label}] {kind.value} on attempt {attempt}/{attempts}, retrying in {delay:.2f}s"
                )
                await self.sleep(delay)


def _as_provider_error(exc: BaseException, kind: FailureKind, attempt: int) -> ProviderError:
    if isinstance(exc, ProviderError):
        exc.attempts = attempt
        return exc
    return ProviderError(
        kind,
        str(exc) or exc.__class__.__name__,
        status_code=status_code_of(exc),
        attempts=attempt,
    )


@dataclass(frozen=True)
class AsymmetricRecoveryPolicy:
    """Extra Gemini attempts when OpenAI succeeded for the same prompt.

    Layered above the generic policy: each extra attempt is a full provider
    call (with its own retries), preceded by a fixed delay.
    """

    extra_attempts: int = 3
    delay: float = 3.0
    sleep: Sleep = field(default=asyncio.sleep, compare=False)

    def applies(self, primary_usable: bool, secondary_usable: bool) -> bool:
        return self.extra_attempts > 0 and not primary_usable and secondary_usable


def gemini_retry_policy(**overrides) -> RetryPolicy:
    params = {
        "max_attempts": settings.max_retries,
        "base_delay": settings.retry_delay_ms / 1000.0,
        "rate_limit_base_delay": settings.rate_limit_retry_delay_ms / 1000.0,
    }
    params.update(overrides)
    return RetryPolicy(**params)


def openai_chat_retry_policy(**overrides) -> RetryPolicy:
    """One retry on any 4xx/5xx after a fixed short delay, no backoff."""
    delay = settings.openai_retry_delay_ms / 1000.0
    params = {
        "max_attempts": 2,
        "base_delay": delay,
        "rate_limit_base_delay": delay,
        "exponential": False,
        "retry_if": retry_on_http_error,
    }
    params.update(overrides)
    return RetryPolicy(**params)


def openai_tool_retry_policy(**overrides) -> RetryPolicy:
    """Responses API (web_search tool) calls: a single attempt."""
    params = {"max_attempts": 1}
    params.update(overrides)
    return RetryPolicy(**params)


def asymmetric_recovery_policy(**overrides) -> AsymmetricRecoveryPolicy:
    params = {
        "extra_attempts": settings.gemini_extra_retries,
        "delay": settings.gemini_extra_retry_delay_ms / 1000.0,
    }
    params.update(overrides)
    return AsymmetricRecoveryPolicy(**params)

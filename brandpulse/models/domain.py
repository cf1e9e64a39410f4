from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

UNRESOLVED_SCHEME = "unresolved://"


class QuestionType(str, Enum):
    REPUTATION = "reputation"
    VISIBILITY = "visibility"
    COMPETITIVE = "competitive"
    CATEGORY_DETECTION = "category-detection"

    @classmethod
    def parse(cls, value: str) -> "QuestionType":
        # Persisted rows from older runs use the short "category" label.
        if value == "category":
            return cls.CATEGORY_DETECTION
        return cls(value)


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTH_ERROR = "auth_error"
    PARSE_ERROR = "parse_error"
    TOKEN_LIMIT = "token_limit"
    UNKNOWN = "unknown"


class ItemState(str, Enum):
    PENDING = "pending"
    CALLING = "calling"
    PARSED_OK = "parsed_ok"
    PARSED_FAILED = "parsed_failed"
    PERSISTED = "persisted"


@dataclass(frozen=True, slots=True)
class QuestionItem:
    id: str
    market_code: str
    type: QuestionType
    prompt_text: str
    question_text: str = ""
    category_id: str | None = None
    category_name: str | None = None
    config: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.config, MappingProxyType):
            object.__setattr__(self, "config", MappingProxyType(dict(self.config)))


@dataclass(frozen=True, slots=True)
class Citation:
    url: str | None
    domain: str
    title: str
    relevance_score: float = 0.9
    source_type: str = "Other"

    @property
    def is_unresolved(self) -> bool:
        return self.url is None or self.url.startswith(UNRESOLVED_SCHEME)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "domain": self.domain,
            "title": self.title,
            "relevance_score": self.relevance_score,
            "source_type": self.source_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Citation":
        return cls(
            url=data.get("url"),
            domain=str(data.get("domain") or ""),
            title=str(data.get("title") or ""),
            relevance_score=float(data.get("relevance_score", 0.9) or 0.0),
            source_type=str(data.get("source_type") or "Other"),
        )


@dataclass(frozen=True, slots=True)
class ProviderResult:
    """One provider's answer to one question (a single attempt or its final retry)."""

    provider_name: str
    raw_text: str | None = None
    parsed_document: Any = None
    grounded_citations: tuple[Citation, ...] = ()
    succeeded: bool = False
    failure_kind: FailureKind | None = None
    latency_ms: int = 0
    error: str | None = None
    attempts: int = 1
    finish_reason: str | None = None

    @classmethod
    def failed(
        cls,
        provider_name: str,
        kind: FailureKind,
        error: str,
        *,
        raw_text: str | None = None,
        latency_ms: int = 0,
        attempts: int = 1,
        finish_reason: str | None = None,
    ) -> "ProviderResult":
        return cls(
            provider_name=provider_name,
            raw_text=raw_text,
            succeeded=False,
            failure_kind=kind,
            latency_ms=latency_ms,
            error=error,
            attempts=attempts,
            finish_reason=finish_reason,
        )


@dataclass(frozen=True, slots=True)
class BatchOutcome:
    item: QuestionItem
    gemini: ProviderResult
    openai: ProviderResult
    state: ItemState = ItemState.PARSED_OK
    error: str | None = None

    @property
    def any_succeeded(self) -> bool:
        return self.gemini.succeeded or self.openai.succeeded

    def result_for(self, provider: str) -> ProviderResult:
        if provider == "gemini":
            return self.gemini
        if provider == "openai":
            return self.openai
        raise KeyError(f"Unknown provider slot: {provider}")

    def sources_for(self, provider: str) -> list[Citation]:
        """Grounded citations plus sources listed inside the parsed answer."""
        from brandpulse.services.citations import merge_document_sources

        result = self.result_for(provider)
        return merge_document_sources(result.parsed_document, result.grounded_citations)


@dataclass
class CategoryAggregate:
    category_id: str
    name: str | None = None
    visibility: Any = None
    competitive: Any = None
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "visibility": self.visibility,
            "competitive": self.competitive,
            "errors": dict(self.errors),
        }


@dataclass
class MarketAggregate:
    market_code: str
    reputation: Any = None
    categories_detected: Any = None
    categories: dict[str, CategoryAggregate] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reputation": self.reputation,
            "categories_detected": self.categories_detected,
            "categories": {cid: cat.to_dict() for cid, cat in self.categories.items()},
            "errors": dict(self.errors),
        }

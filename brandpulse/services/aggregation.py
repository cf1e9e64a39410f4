"""Per-market aggregation of batch outcomes.

``MarketAggregatorDriver`` groups outcomes by market, question type and
category and runs the injected aggregation functions with maximal
parallelism: markets concurrently, reputation and category detection
concurrently, and visibility plus competitive concurrently per category.
The default functions below are simple count-based roll-ups.
"""
from __future__ import annotations

import asyncio
import inspect
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence, Union

from loguru import logger

from brandpulse.models.domain import (
    BatchOutcome,
    CategoryAggregate,
    MarketAggregate,
    QuestionType,
)
from brandpulse.services.database import AnalysisStore, fire_and_forget

PROVIDERS = ("gemini", "openai")
TOP_DOMAINS = 20

# Persisted analysis_type for each question type
ANALYSIS_TYPES = {
    QuestionType.REPUTATION: "reputation",
    QuestionType.CATEGORY_DETECTION: "categories_associated",
    QuestionType.VISIBILITY: "visibility",
    QuestionType.COMPETITIVE: "competitive",
}


@dataclass(frozen=True)
class AggregationContext:
    market_code: str
    market: Mapping[str, Any]
    question_type: QuestionType
    category_id: str | None = None
    category_name: str | None = None
    competitors: tuple[str, ...] = ()

    @property
    def entity(self) -> str:
        return str(self.market.get("entity") or "")


AggregateFn = Callable[
    [Sequence[BatchOutcome], AggregationContext],
    Union[Any, Awaitable[Any]],
]


# --- Default aggregation functions ---


def _normalize(name: Any) -> str:
    return " ".join(str(name or "").lower().split())


def _documents(outcomes: Iterable[BatchOutcome]) -> list[dict[str, Any]]:
    docs = []
    for outcome in outcomes:
        for provider in PROVIDERS:
            result = outcome.result_for(provider)
            if result.succeeded and isinstance(result.parsed_document, dict):
                docs.append(result.parsed_document)
    return docs


def summarize_outcomes(outcomes: Sequence[BatchOutcome]) -> dict[str, Any]:
    """Answer and failure counts per provider plus citations by domain."""
    answers: Counter[str] = Counter()
    failures: Counter[str] = Counter()
    domains: Counter[str] = Counter()
    source_types: Counter[str] = Counter()

    for outcome in outcomes:
        for provider in PROVIDERS:
            result = outcome.result_for(provider)
            if not result.succeeded:
                kind = result.failure_kind.value if result.failure_kind else "unknown"
                failures[f"{provider}:{kind}"] += 1
                continue
            answers[provider] += 1
            for source in outcome.sources_for(provider):
                if source.domain:
                    domains[source.domain] += 1
                source_types[source.source_type] += 1

    return {
        "questions": len(outcomes),
        "answers": dict(answers),
        "failures": dict(failures),
        "citations_by_domain": dict(domains.most_common(TOP_DOMAINS)),
        "source_types": dict(source_types),
    }


def aggregate_reputation(outcomes: Sequence[BatchOutcome], context: AggregationContext) -> dict[str, Any]:
    sentiment: Counter[str] = Counter()
    for doc in _documents(outcomes):
        value = _normalize(doc.get("sentiment"))
        sentiment[value if value in ("positive", "neutral", "negative") else "unknown"] += 1
    return {
        "entity": context.entity,
        "sentiment": dict(sentiment),
        **summarize_outcomes(outcomes),
    }


def _ranked_names(entries: Any) -> list[tuple[str, int | None]]:
    ranked: list[tuple[str, int | None]] = []
    if not isinstance(entries, list):
        return ranked
    for position, entry in enumerate(entries, start=1):
        if isinstance(entry, str):
            ranked.append((entry, position))
        elif isinstance(entry, dict) and entry.get("name"):
            rank = entry.get("rank")
            ranked.append((str(entry["name"]), rank if isinstance(rank, int) else position))
    return ranked


def _ranking_table(docs: Iterable[dict[str, Any]], key: str) -> list[dict[str, Any]]:
    mentions: Counter[str] = Counter()
    rank_sums: defaultdict[str, int] = defaultdict(int)
    display: dict[str, str] = {}
    for doc in docs:
        for name, rank in _ranked_names(doc.get(key)):
            normalized = _normalize(name)
            display.setdefault(normalized, name)
            mentions[normalized] += 1
            rank_sums[normalized] += rank or 0
    table = [
        {
            "name": display[name],
            "mentions": count,
            "average_rank": round(rank_sums[name] / count, 2),
        }
        for name, count in mentions.items()
    ]
    table.sort(key=lambda row: (-row["mentions"], row["average_rank"], row["name"]))
    return table


def aggregate_categories(outcomes: Sequence[BatchOutcome], context: AggregationContext) -> dict[str, Any]:
    return {
        "entity": context.entity,
        "categories": _ranking_table(_documents(outcomes), "categories"),
        **summarize_outcomes(outcomes),
    }


def aggregate_visibility(outcomes: Sequence[BatchOutcome], context: AggregationContext) -> dict[str, Any]:
    docs = _documents(outcomes)
    ranking = _ranking_table(docs, "entities_ranking")
    entity = _normalize(context.entity)
    visible = sum(
        1
        for doc in docs
        if any(entity and entity in _normalize(name) for name, _ in _ranked_names(doc.get("entities_ranking")))
    )
    return {
        "entity": context.entity,
        "category": context.category_name,
        "mentions": visible,
        "visibility_rate": round(visible / len(docs), 3) if docs else 0.0,
        "ranking": ranking,
        **summarize_outcomes(outcomes),
    }


def aggregate_competitive(outcomes: Sequence[BatchOutcome], context: AggregationContext) -> dict[str, Any]:
    docs = _documents(outcomes)
    candidates = [context.entity, *context.competitors]
    by_normalized = {_normalize(name): name for name in candidates if name}
    choices: Counter[str] = Counter()
    for doc in docs:
        choice = _normalize(doc.get("entity_choice"))
        choices[by_normalized.get(choice, "other") if choice else "none"] += 1
    wins = choices.get(context.entity, 0)
    return {
        "entity": context.entity,
        "category": context.category_name,
        "competitors": list(context.competitors),
        "choices": dict(choices),
        "entity_wins": wins,
        "win_rate": round(wins / len(docs), 3) if docs else 0.0,
        **summarize_outcomes(outcomes),
    }


@dataclass
class Aggregators:
    reputation: AggregateFn = aggregate_reputation
    category_detection: AggregateFn = aggregate_categories
    visibility: AggregateFn = aggregate_visibility
    competitive: AggregateFn = aggregate_competitive

    def for_type(self, question_type: QuestionType) -> AggregateFn:
        return {
            QuestionType.REPUTATION: self.reputation,
            QuestionType.CATEGORY_DETECTION: self.category_detection,
            QuestionType.VISIBILITY: self.visibility,
            QuestionType.COMPETITIVE: self.competitive,
        }[question_type]


# --- Driver ---


@dataclass
class _MarketGroups:
    by_type: dict[QuestionType, list[BatchOutcome]] = field(default_factory=lambda: defaultdict(list))
    # category id -> question type -> outcomes, in first-seen order
    by_category: dict[str, dict[QuestionType, list[BatchOutcome]]] = field(default_factory=dict)
    category_names: dict[str, str] = field(default_factory=dict)


def group_outcomes(outcomes: Iterable[BatchOutcome]) -> dict[str, _MarketGroups]:
    """Group by market, then by (type, category). Item-level errors are skipped."""
    grouped: dict[str, _MarketGroups] = {}
    for outcome in outcomes:
        if outcome.error:
            continue
        item = outcome.item
        category_scoped = item.type in (QuestionType.VISIBILITY, QuestionType.COMPETITIVE)
        if category_scoped and not item.category_id:
            logger.warning(f"Skipping {item.type.value} outcome {item.id}: no category to aggregate under")
            continue
        groups = grouped.setdefault(item.market_code, _MarketGroups())
        if category_scoped:
            per_category = groups.by_category.setdefault(item.category_id, defaultdict(list))
            per_category[item.type].append(outcome)
            if item.category_name:
                groups.category_names.setdefault(item.category_id, item.category_name)
        else:
            groups.by_type[item.type].append(outcome)
    return grouped


class MarketAggregatorDriver:
    def __init__(
        self,
        aggregators: Aggregators | None = None,
        *,
        store: AnalysisStore | None = None,
        report_id: str = "",
    ):
        self.aggregators = aggregators or Aggregators()
        self.store = store
        self.report_id = report_id

    async def aggregate(
        self,
        outcomes: Iterable[BatchOutcome],
        market_definitions: Mapping[str, Mapping[str, Any]],
    ) -> dict[str, MarketAggregate]:
        grouped = group_outcomes(outcomes)
        market_codes = list(market_definitions)
        market_codes.extend(code for code in grouped if code not in market_definitions)

        aggregates = await asyncio.gather(
            *(
                self._aggregate_market(code, grouped.get(code, _MarketGroups()), market_definitions.get(code, {}))
                for code in market_codes
            )
        )
        logger.info(f"[{self.report_id}] aggregated {len(aggregates)} markets")
        return {aggregate.market_code: aggregate for aggregate in aggregates}

    async def _aggregate_market(
        self,
        market_code: str,
        groups: _MarketGroups,
        market: Mapping[str, Any],
    ) -> MarketAggregate:
        aggregate = MarketAggregate(market_code=market_code)

        def context(question_type: QuestionType) -> AggregationContext:
            return AggregationContext(market_code=market_code, market=market, question_type=question_type)

        aggregate.reputation, aggregate.categories_detected = await asyncio.gather(
            self._run(
                aggregate.errors,
                "reputation",
                groups.by_type.get(QuestionType.REPUTATION, []),
                context(QuestionType.REPUTATION),
            ),
            self._run(
                aggregate.errors,
                "categories_detected",
                groups.by_type.get(QuestionType.CATEGORY_DETECTION, []),
                context(QuestionType.CATEGORY_DETECTION),
            ),
        )

        categories = await asyncio.gather(
            *(
                self._aggregate_category(market_code, market, category_id, per_type, groups.category_names)
                for category_id, per_type in groups.by_category.items()
            )
        )
        aggregate.categories = {category.category_id: category for category in categories}
        return aggregate

    async def _aggregate_category(
        self,
        market_code: str,
        market: Mapping[str, Any],
        category_id: str,
        per_type: Mapping[QuestionType, list[BatchOutcome]],
        category_names: Mapping[str, str],
    ) -> CategoryAggregate:
        definition = (market.get("categories") or {}).get(category_id) or {}
        name = category_names.get(category_id) or definition.get("name")
        aggregate = CategoryAggregate(category_id=category_id, name=name)

        def context(question_type: QuestionType) -> AggregationContext:
            return AggregationContext(
                market_code=market_code,
                market=market,
                question_type=question_type,
                category_id=category_id,
                category_name=name,
                competitors=tuple(definition.get("competitors") or ()),
            )

        aggregate.visibility, aggregate.competitive = await asyncio.gather(
            self._run(
                aggregate.errors,
                "visibility",
                per_type.get(QuestionType.VISIBILITY, []),
                context(QuestionType.VISIBILITY),
            ),
            self._run(
                aggregate.errors,
                "competitive",
                per_type.get(QuestionType.COMPETITIVE, []),
                context(QuestionType.COMPETITIVE),
            ),
        )
        return aggregate

    async def _run(
        self,
        errors: dict[str, str],
        key: str,
        outcomes: Sequence[BatchOutcome],
        context: AggregationContext,
    ) -> Any:
        if not outcomes:
            return None
        fn = self.aggregators.for_type(context.question_type)
        try:
            result = fn(outcomes, context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            label = f"{context.market_code}/{context.category_id or '-'}/{key}"
            logger.error(f"[{self.report_id}] aggregation {label} failed: {exc}")
            errors[key] = str(exc) or exc.__class__.__name__
            return None

        if result is not None and self.store is not None:
            fire_and_forget(
                f"{key} analysis {context.market_code}",
                self.store.save_market_analysis(
                    self.report_id,
                    context.market_code,
                    ANALYSIS_TYPES[context.question_type],
                    result,
                    context.category_id,
                ),
                report_id=self.report_id,
            )
        return result

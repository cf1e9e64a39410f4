"""End-to-end analysis runs: question collection, provider calls, classification,
aggregation and synthesis, with live progress and persisted status."""
from __future__ import annotations

import dataclasses
import inspect
import time
import uuid
from typing import Any, Awaitable, Callable, Mapping, Sequence, Union

from loguru import logger
from pydantic import ValidationError

from brandpulse.models.domain import (
    BatchOutcome,
    Citation,
    FailureKind,
    ItemState,
    MarketAggregate,
    ProviderResult,
    QuestionItem,
)
from brandpulse.models.schemas import AnalysisConfig
from brandpulse.providers.pair import ProviderCredentials, ProviderPair
from brandpulse.services import logger as log_service
from brandpulse.services.aggregation import PROVIDERS, Aggregators, MarketAggregatorDriver
from brandpulse.services.citations import unique_by_url
from brandpulse.services.database import AnalysisStore, default_store, drain_pending_writes
from brandpulse.services.orchestrator import BatchOrchestrator
from brandpulse.services.progress import ProgressBroker, ProgressReporter
from brandpulse.services.questions import (
    collect_question_items,
    market_definitions,
    parse_item_id,
)

SourceClassifier = Callable[
    [list[Citation], AnalysisConfig],
    Union[list[Citation], Awaitable[list[Citation]]],
]
InsightsFn = Callable[
    [MarketAggregate, AnalysisConfig, list[Citation]],
    Union[Any, Awaitable[Any]],
]

# Shared by the API routes and every run started in this process.
broker = ProgressBroker()


class AnalysisConfigError(ValueError):
    """The run cannot start: invalid config, no questions or no credentials."""


def new_report_id() -> str:
    return str(uuid.uuid4())


def load_config(config: AnalysisConfig | Mapping[str, Any]) -> AnalysisConfig:
    if isinstance(config, AnalysisConfig):
        parsed = config
    else:
        try:
            parsed = AnalysisConfig.model_validate(config)
        except ValidationError as exc:
            raise AnalysisConfigError(f"Invalid analysis config: {exc.error_count()} error(s)") from exc
    if not parsed.entity.strip():
        raise AnalysisConfigError("Analysis config has no entity")
    if not parsed.markets:
        raise AnalysisConfigError("Analysis config has no markets")
    return parsed


def validate_run(
    config: AnalysisConfig | Mapping[str, Any],
    credentials: ProviderCredentials,
) -> tuple[AnalysisConfig, list[QuestionItem]]:
    parsed = load_config(config)
    if not credentials.any_configured:
        raise AnalysisConfigError("No provider API keys configured")
    items = collect_question_items(parsed)
    if not items:
        raise AnalysisConfigError("Analysis config produces no questions")
    return parsed, items


def keep_source_types(sources: list[Citation], config: AnalysisConfig) -> list[Citation]:
    """Default classifier: keep the type each provider assigned."""
    return list(sources)


def basic_insights(
    aggregate: MarketAggregate,
    config: AnalysisConfig,
    sources: list[Citation],
) -> dict[str, Any]:
    """Headline numbers for the primary market."""
    type_counts: dict[str, int] = {}
    for source in sources:
        type_counts[source.source_type] = type_counts.get(source.source_type, 0) + 1

    categories = {}
    for category_id, category in aggregate.categories.items():
        visibility = category.visibility if isinstance(category.visibility, dict) else {}
        competitive = category.competitive if isinstance(category.competitive, dict) else {}
        categories[category_id] = {
            "name": category.name,
            "visibility_rate": visibility.get("visibility_rate"),
            "win_rate": competitive.get("win_rate"),
        }

    reputation = aggregate.reputation if isinstance(aggregate.reputation, dict) else {}
    return {
        "entity": config.entity,
        "market": aggregate.market_code,
        "sentiment": reputation.get("sentiment", {}),
        "top_domains": reputation.get("citations_by_domain", {}),
        "source_types": type_counts,
        "categories": categories,
        "total_sources": len(sources),
    }


def outcome_from_row(row: Mapping[str, Any], items_by_id: Mapping[str, QuestionItem]) -> BatchOutcome | None:
    """Rebuild a ``BatchOutcome`` from a persisted raw-result row."""
    question_id = str(row.get("question_id") or "")
    item = items_by_id.get(question_id)
    if item is None:
        parsed_id = parse_item_id(question_id)
        if parsed_id is None:
            logger.warning(f"Skipping saved response with unknown question id {question_id!r}")
            return None
        market_code, question_type, category_id, _ = parsed_id
        item = QuestionItem(
            id=question_id,
            market_code=market_code,
            type=question_type,
            prompt_text="",
            question_text=str(row.get("question_text") or ""),
            category_id=category_id,
        )

    def result(provider: str) -> ProviderResult:
        document = row.get(f"{provider}_response")
        citations = tuple(
            Citation.from_dict(entry)
            for entry in row.get(f"{provider}_sources") or []
            if isinstance(entry, Mapping)
        )
        if document is None:
            return ProviderResult.failed(provider, FailureKind.UNKNOWN, "no saved response", attempts=0)
        return ProviderResult(
            provider_name=provider,
            parsed_document=document,
            grounded_citations=citations,
            succeeded=True,
            attempts=0,
        )

    gemini, openai = result("gemini"), result("openai")
    state = ItemState.PERSISTED if (gemini.succeeded or openai.succeeded) else ItemState.PARSED_FAILED
    return BatchOutcome(item=item, gemini=gemini, openai=openai, state=state)


def _reclassify(outcome: BatchOutcome, classified: Mapping[str, Citation]) -> BatchOutcome:
    results = {}
    for provider in PROVIDERS:
        result = outcome.result_for(provider)
        sources = tuple(classified.get(s.url, s) if s.url else s for s in outcome.sources_for(provider))
        results[provider] = dataclasses.replace(result, grounded_citations=sources)
    return dataclasses.replace(outcome, gemini=results["gemini"], openai=results["openai"])


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AnalysisRunner:
    """Drives one analysis run from config to completed report."""

    def __init__(
        self,
        *,
        pair: ProviderPair | None = None,
        store: AnalysisStore | None = None,
        progress_broker: ProgressBroker | None = None,
        aggregators: Aggregators | None = None,
        classifier: SourceClassifier | None = None,
        insights: InsightsFn | None = basic_insights,
        batch_size: int | None = None,
    ):
        self.pair = pair or ProviderPair()
        self.store = store or default_store()
        self.broker = progress_broker or broker
        self.aggregators = aggregators or Aggregators()
        self.classifier = classifier or keep_source_types
        self.insights = insights
        self.batch_size = batch_size

    async def run(
        self,
        report_id: str,
        config: AnalysisConfig | Mapping[str, Any],
        credentials: ProviderCredentials,
    ) -> dict[str, MarketAggregate] | None:
        """Run every question and return the per-market aggregates.

        Run-level failures end the run with a terminal ``error`` event and a
        ``failed`` status; they are logged, never raised.
        """
        reporter = ProgressReporter(report_id, self.broker, self.store)
        started = time.monotonic()
        try:
            reporter.start("Starting multi-market analysis...")
            parsed, items = validate_run(config, credentials)
            logger.info(
                f"[{report_id}] analysis for {parsed.entity}: {len(items)} questions "
                f"across {', '.join(m.code for m in parsed.markets)}"
            )
            reporter.enter_phase("calling", f"Processing {len(items)} questions")

            counts = {"gemini_ok": 0, "openai_ok": 0, "failed": 0}

            def on_item_complete(outcome: BatchOutcome, completed: int, total: int) -> None:
                counts["gemini_ok"] += int(outcome.gemini.succeeded)
                counts["openai_ok"] += int(outcome.openai.succeeded)
                counts["failed"] += int(not outcome.any_succeeded)
                reporter.advance(
                    completed,
                    total,
                    f"{outcome.item.market_code}: {completed}/{total} questions",
                    counts=dict(counts),
                )

            orchestrator = BatchOrchestrator(
                self.pair,
                credentials,
                report_id=report_id,
                store=self.store,
                on_item_complete=on_item_complete,
            )
            outcomes = await orchestrator.run(items, self.batch_size)
            return await self._finish(report_id, parsed, outcomes, reporter, started)
        except Exception as exc:
            await self._fail(report_id, reporter, exc)
            return None

    async def resume(
        self,
        report_id: str,
        config: AnalysisConfig | Mapping[str, Any],
    ) -> dict[str, MarketAggregate] | None:
        """Re-run classification, aggregation and synthesis from saved responses."""
        reporter = ProgressReporter(report_id, self.broker, self.store)
        started = time.monotonic()
        try:
            reporter.start("Resuming analysis from saved responses...")
            parsed = load_config(config)
            rows = await self.store.get_raw_results(report_id)
            if not rows:
                raise AnalysisConfigError(f"No saved responses for report {report_id}")

            items_by_id = {item.id: item for item in collect_question_items(parsed)}
            outcomes = [
                outcome
                for outcome in (outcome_from_row(row, items_by_id) for row in rows)
                if outcome is not None
            ]
            logger.info(f"[{report_id}] resuming with {len(outcomes)}/{len(rows)} saved responses")
            return await self._finish(report_id, parsed, outcomes, reporter, started)
        except Exception as exc:
            await self._fail(report_id, reporter, exc)
            return None

    async def _finish(
        self,
        report_id: str,
        config: AnalysisConfig,
        outcomes: Sequence[BatchOutcome],
        reporter: ProgressReporter,
        started: float,
    ) -> dict[str, MarketAggregate]:
        reporter.enter_phase("classifying", "Classifying sources...")
        outcomes, sources = await self._classify(report_id, config, outcomes)

        reporter.enter_phase("aggregating", "Aggregating results per market...")
        driver = MarketAggregatorDriver(self.aggregators, store=self.store, report_id=report_id)
        aggregates = await driver.aggregate(outcomes, market_definitions(config))

        reporter.enter_phase("synthesizing", "Generating insights...")
        await self._synthesize(report_id, config, aggregates, sources)

        await drain_pending_writes(report_id)
        execution_time = round(time.monotonic() - started)
        await self._update_status(report_id, "completed", 100)

        answered = sum(1 for o in outcomes if o.any_succeeded)
        log_service.log_pipeline_step(
            report_id,
            "analysis",
            "completed",
            {"execution_time": execution_time, "questions": len(outcomes), "answered": answered},
        )
        reporter.complete(
            "Analysis complete!",
            data={
                "execution_time": execution_time,
                "questions": len(outcomes),
                "answered": answered,
                "markets": list(aggregates),
            },
        )
        return aggregates

    async def _classify(
        self,
        report_id: str,
        config: AnalysisConfig,
        outcomes: Sequence[BatchOutcome],
    ) -> tuple[list[BatchOutcome], list[Citation]]:
        unique = unique_by_url(
            source
            for outcome in outcomes
            if not outcome.error
            for provider in PROVIDERS
            for source in outcome.sources_for(provider)
        )
        if not unique:
            return list(outcomes), []

        try:
            classified = list(await _maybe_await(self.classifier(unique, config)))
        except Exception as exc:
            logger.error(f"[{report_id}] source classification failed: {exc}")
            classified = unique

        try:
            await self.store.save_sources(report_id, classified)
        except Exception as exc:
            logger.error(f"[{report_id}] saving sources failed: {exc}")

        by_url = {source.url: source for source in classified if source.url}
        logger.info(f"[{report_id}] classified {len(by_url)} unique sources")
        return [_reclassify(outcome, by_url) for outcome in outcomes], classified

    async def _synthesize(
        self,
        report_id: str,
        config: AnalysisConfig,
        aggregates: Mapping[str, MarketAggregate],
        sources: list[Citation],
    ) -> None:
        if self.insights is None:
            return
        primary = config.primary_market()
        aggregate = aggregates.get(primary.code) if primary else None
        if aggregate is None:
            return
        try:
            insights = await _maybe_await(self.insights(aggregate, config, sources))
            if insights is not None:
                await self.store.save_market_analysis(report_id, aggregate.market_code, "insights", insights)
        except Exception as exc:
            logger.error(f"[{report_id}] insights failed: {exc}")

    async def _update_status(
        self,
        report_id: str,
        status: str,
        progress: int | None = None,
        error: str | None = None,
    ) -> None:
        try:
            await self.store.update_status(report_id, status, progress=progress, error=error)
        except Exception as exc:
            logger.error(f"[{report_id}] status update to {status} failed: {exc}")

    async def _fail(self, report_id: str, reporter: ProgressReporter, exc: Exception) -> None:
        if isinstance(exc, AnalysisConfigError):
            logger.error(f"[{report_id}] analysis not started: {exc}")
        else:
            logger.exception(f"[{report_id}] analysis failed")
        message = str(exc) or exc.__class__.__name__
        await drain_pending_writes(report_id)
        await self._update_status(report_id, "failed", error=message)
        reporter.fail(message)


async def run_analysis(
    report_id: str,
    config: AnalysisConfig | Mapping[str, Any],
    credentials: ProviderCredentials | None = None,
) -> None:
    await AnalysisRunner().run(report_id, config, credentials or ProviderCredentials.from_settings())


async def resume_analysis(report_id: str, config: AnalysisConfig | Mapping[str, Any]) -> None:
    await AnalysisRunner().resume(report_id, config)

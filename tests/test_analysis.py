"""End-to-end runs with stubbed providers and an in-memory store."""
import asyncio
from dataclasses import replace

import pytest

from brandpulse.models.domain import FailureKind, ProviderResult
from brandpulse.models.events import EventType
from brandpulse.providers.pair import ProviderCredentials
from brandpulse.services.analysis import (
    AnalysisConfigError,
    AnalysisRunner,
    load_config,
    outcome_from_row,
    validate_run,
)
from brandpulse.services.progress import ProgressBroker

KEYS = ProviderCredentials(gemini_api_key="g-key", openai_api_key="o-key")

CONFIG = {
    "entity": "Acme",
    "markets": [{"code": "US", "country": "United States", "isPrimary": True}],
    "categoryFamilies": [{"id": "shoes", "canonicalName": "Running Shoes"}],
    "competitors": {"shoes": {"US": ["Nike"]}},
    "reputationQuestions": {
        "US": [
            {"id": "Q1", "question": "Is Acme trustworthy?"},
            {"id": "Q2", "question": "Is Acme popular?"},
            {"id": "Q3", "question": "Is Acme good value?"},
        ]
    },
    "categoryQuestions": {
        "US": {
            "shoes": {
                "visibility": [
                    {"id": "V1", "question": "Best running shoes?"},
                    {"id": "V2", "question": "Top running shoe brands?"},
                ],
                "competitive": [
                    {"id": "C1", "question": "Acme or Nike?"},
                    {"id": "C2", "question": "Which should I buy?"},
                ],
            }
        }
    },
}

DOCUMENT = {
    "raw_response": "Acme is well regarded.",
    "sentiment": "positive",
    "entities_ranking": [{"rank": 1, "name": "Acme"}, {"rank": 2, "name": "Nike"}],
    "entity_choice": "Acme",
    "categories": [{"rank": 1, "name": "Running Shoes"}],
    "sources_cited_news": [{"url": "https://news.example.com/acme", "title": "Acme news"}],
}


class StubPair:
    def __init__(self, gemini_fails=False):
        self.prompts = []
        self.gemini_fails = gemini_fails

    async def call_both(self, prompt, credentials, gemini_options=None, openai_options=None):
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        openai = ProviderResult(provider_name="openai", parsed_document=DOCUMENT, succeeded=True)
        if self.gemini_fails:
            gemini = ProviderResult.failed("gemini", FailureKind.RATE_LIMIT, "quota", attempts=4)
        else:
            gemini = replace(openai, provider_name="gemini")
        return gemini, openai


class ExplodingPair:
    async def call_both(self, *args, **kwargs):
        raise AssertionError("providers must not be called")


async def collect(subscription):
    return await asyncio.wait_for(_drain(subscription), timeout=2)


async def _drain(subscription):
    return [event async for event in subscription]


@pytest.mark.asyncio
async def test_full_run_reports_monotonic_progress_and_one_terminal(store):
    broker = ProgressBroker()
    subscription = broker.subscribe("r1")
    pair = StubPair(gemini_fails=True)
    runner = AnalysisRunner(pair=pair, store=store, progress_broker=broker, batch_size=4)

    aggregates = await runner.run("r1", CONFIG, KEYS)
    events = await collect(subscription)

    assert len(pair.prompts) == 10
    progress = [event.progress for event in events]
    assert progress == sorted(progress)
    terminal = [event for event in events if event.is_terminal]
    assert len(terminal) == 1
    assert events[-1].type == EventType.COMPLETE
    assert events[-1].progress == 100
    assert events[-1].data["questions"] == 10
    assert events[-1].data["answered"] == 10
    assert events[-1].data["markets"] == ["US"]

    last_count = [event.counts for event in events if event.counts][-1]
    assert last_count["completed"] == 10
    assert last_count["gemini_ok"] == 0
    assert last_count["openai_ok"] == 10

    assert list(aggregates) == ["US"]
    us = aggregates["US"]
    assert us.reputation["sentiment"] == {"positive": 3}
    assert us.reputation["failures"] == {"gemini:rate_limit": 3}
    assert us.categories["shoes"].competitive["win_rate"] == 1.0

    assert len(store.raw_results) == 10
    assert store.statuses[-1] == ("completed", 100, None)
    assert [s.url for s in store.sources] == ["https://news.example.com/acme"]
    analysis_types = {kind for _market, kind, _payload, _category in store.analyses}
    assert analysis_types == {"reputation", "categories_associated", "visibility", "competitive", "insights"}


@pytest.mark.asyncio
async def test_classifier_types_flow_into_aggregates(store):
    def classify(sources, config):
        return [replace(source, source_type="Corporate") for source in sources]

    runner = AnalysisRunner(pair=StubPair(), store=store, progress_broker=ProgressBroker(), classifier=classify)
    aggregates = await runner.run("r2", CONFIG, KEYS)

    assert aggregates["US"].reputation["source_types"] == {"Corporate": 6}
    assert {source.source_type for source in store.sources} == {"Corporate"}


@pytest.mark.asyncio
async def test_failing_classifier_keeps_original_types(store):
    async def classify(sources, config):
        raise RuntimeError("classifier down")

    runner = AnalysisRunner(pair=StubPair(), store=store, progress_broker=ProgressBroker(), classifier=classify)
    aggregates = await runner.run("r3", CONFIG, KEYS)

    assert aggregates["US"].reputation["source_types"] == {"Journalism": 6}


@pytest.mark.asyncio
async def test_missing_credentials_end_with_error_event(store):
    broker = ProgressBroker()
    subscription = broker.subscribe("r4")
    runner = AnalysisRunner(pair=ExplodingPair(), store=store, progress_broker=broker)

    result = await runner.run("r4", CONFIG, ProviderCredentials())
    events = await collect(subscription)

    assert result is None
    assert events[-1].type == EventType.ERROR
    assert events[-1].message == "No provider API keys configured"
    assert len([event for event in events if event.is_terminal]) == 1
    assert store.statuses[-1] == ("failed", None, "No provider API keys configured")


@pytest.mark.asyncio
async def test_resume_rebuilds_aggregates_without_calling_providers(store_factory):
    rows = [
        {
            "question_id": "US:reputation:-:Q1",
            "question_text": "Is Acme trustworthy?",
            "question_type": "reputation",
            "gemini_response": {"sentiment": "negative"},
            "openai_response": None,
            "gemini_sources": [{"url": "https://a.com/1", "domain": "a.com", "title": "A", "source_type": "Journalism"}],
            "openai_sources": [],
        },
        {
            "question_id": "US:visibility:shoes:V1",
            "question_text": "Best running shoes?",
            "question_type": "visibility",
            "gemini_response": {"entities_ranking": ["Acme"]},
            "openai_response": {"entities_ranking": ["Nike"]},
            "gemini_sources": None,
            "openai_sources": [],
        },
        {"question_id": "legacy-7", "gemini_response": {"sentiment": "positive"}},
    ]
    store = store_factory(raw_rows=rows)
    broker = ProgressBroker()
    subscription = broker.subscribe("r5")
    runner = AnalysisRunner(pair=ExplodingPair(), store=store, progress_broker=broker)

    aggregates = await runner.resume("r5", CONFIG)
    events = await collect(subscription)

    assert events[-1].type == EventType.COMPLETE
    assert events[-1].data["questions"] == 2
    us = aggregates["US"]
    assert us.reputation["sentiment"] == {"negative": 1}
    assert us.categories["shoes"].visibility["visibility_rate"] == 0.5
    assert store.raw_results == []


@pytest.mark.asyncio
async def test_resume_without_saved_rows_fails(store):
    runner = AnalysisRunner(pair=ExplodingPair(), store=store, progress_broker=ProgressBroker())

    assert await runner.resume("r6", CONFIG) is None
    assert store.statuses[-1][0] == "failed"


def test_validate_run():
    config, items = validate_run(CONFIG, KEYS)
    assert config.entity == "Acme"
    assert len(items) == 10

    with pytest.raises(AnalysisConfigError, match="No provider API keys"):
        validate_run(CONFIG, ProviderCredentials())
    with pytest.raises(AnalysisConfigError, match="no markets"):
        load_config({"entity": "Acme", "markets": []})
    with pytest.raises(AnalysisConfigError, match="Invalid analysis config"):
        load_config({"markets": "US"})


def test_outcome_from_row_restores_category_from_id():
    outcome = outcome_from_row(
        {"question_id": "FR:competitive:shoes:C9", "gemini_response": None, "openai_response": {"entity_choice": "Acme"}},
        {},
    )
    assert outcome.item.market_code == "FR"
    assert outcome.item.category_id == "shoes"
    assert not outcome.gemini.succeeded
    assert outcome.openai.succeeded

import asyncio

import pytest

from brandpulse.models.domain import (
    BatchOutcome,
    FailureKind,
    ItemState,
    ProviderResult,
    QuestionItem,
    QuestionType,
)
from brandpulse.services.aggregation import (
    AggregationContext,
    Aggregators,
    MarketAggregatorDriver,
    aggregate_competitive,
    aggregate_visibility,
    group_outcomes,
    summarize_outcomes,
)
from brandpulse.services.database import drain_pending_writes

MARKETS = {
    "US": {
        "entity": "Acme",
        "categories": {"shoes": {"name": "Running Shoes", "competitors": ["Nike", "Asics"]}},
    },
    "FR": {
        "entity": "Acme",
        "categories": {"shoes": {"name": "Chaussures", "competitors": ["Nike"]}},
    },
}


def outcome(market, question_type, gemini_doc=None, openai_doc=None, category_id=None, index=1, error=None):
    def result(provider, doc):
        if doc is None:
            return ProviderResult.failed(provider, FailureKind.PARSE_ERROR, "unparseable")
        return ProviderResult(provider_name=provider, parsed_document=doc, succeeded=True)

    item = QuestionItem(
        id=f"{market}:{question_type.value}:{category_id or '-'}:Q{index}",
        market_code=market,
        type=question_type,
        prompt_text="prompt",
        category_id=category_id,
        category_name=MARKETS[market]["categories"]["shoes"]["name"] if category_id else None,
    )
    return BatchOutcome(
        item=item,
        gemini=result("gemini", gemini_doc),
        openai=result("openai", openai_doc),
        state=ItemState.PARSED_FAILED if error else ItemState.PARSED_OK,
        error=error,
    )


def sample_outcomes():
    return [
        outcome("US", QuestionType.REPUTATION, {"sentiment": "positive"}, {"sentiment": "Positive"}),
        outcome("US", QuestionType.CATEGORY_DETECTION, {"categories": ["Running Shoes", "Apparel"]}, None),
        outcome(
            "US",
            QuestionType.VISIBILITY,
            {"entities_ranking": [{"rank": 1, "name": "Nike"}, {"rank": 2, "name": "Acme"}]},
            {"entities_ranking": ["Asics"]},
            category_id="shoes",
        ),
        outcome("US", QuestionType.COMPETITIVE, {"entity_choice": "acme"}, {"entity_choice": "Nike"}, category_id="shoes"),
        outcome("FR", QuestionType.REPUTATION, {"sentiment": "negative"}, None),
    ]


def test_group_outcomes_splits_markets_and_categories():
    grouped = group_outcomes(sample_outcomes())

    assert set(grouped) == {"US", "FR"}
    us = grouped["US"]
    assert len(us.by_type[QuestionType.REPUTATION]) == 1
    assert len(us.by_category["shoes"][QuestionType.VISIBILITY]) == 1
    assert us.category_names == {"shoes": "Running Shoes"}


def test_outcomes_with_item_errors_are_excluded():
    broken = outcome("US", QuestionType.REPUTATION, None, None, index=2, error="exploded")
    grouped = group_outcomes([broken])
    assert grouped == {}


def test_category_questions_without_category_are_skipped():
    orphan = outcome("US", QuestionType.VISIBILITY, {"entities_ranking": ["Acme"]}, None, index=3)
    grouped = group_outcomes([orphan, sample_outcomes()[0]])

    us = grouped["US"]
    assert QuestionType.VISIBILITY not in us.by_type
    assert us.by_category == {}
    assert len(us.by_type[QuestionType.REPUTATION]) == 1
    assert group_outcomes([orphan]) == {}


@pytest.mark.asyncio
async def test_default_aggregation(store):
    driver = MarketAggregatorDriver(store=store, report_id="r1")

    aggregates = await driver.aggregate(sample_outcomes(), MARKETS)
    await drain_pending_writes()

    us = aggregates["US"]
    assert us.reputation["sentiment"] == {"positive": 2}
    assert us.reputation["answers"] == {"gemini": 1, "openai": 1}
    assert [row["name"] for row in us.categories_detected["categories"]] == ["Running Shoes", "Apparel"]

    shoes = us.categories["shoes"]
    assert shoes.name == "Running Shoes"
    assert shoes.visibility["mentions"] == 1
    assert shoes.visibility["visibility_rate"] == 0.5
    assert shoes.competitive["choices"] == {"Acme": 1, "Nike": 1}
    assert shoes.competitive["win_rate"] == 0.5
    assert shoes.errors == {}

    fr = aggregates["FR"]
    assert fr.reputation["failures"] == {"openai:parse_error": 1}
    assert fr.categories == {}
    assert fr.categories_detected is None

    saved = {(market, kind, category) for market, kind, _payload, category in store.analyses}
    assert saved == {
        ("US", "reputation", None),
        ("US", "categories_associated", None),
        ("US", "visibility", "shoes"),
        ("US", "competitive", "shoes"),
        ("FR", "reputation", None),
    }


@pytest.mark.asyncio
async def test_failing_aggregator_is_isolated():
    def broken_visibility(outcomes, context):
        raise RuntimeError("bad ranking data")

    driver = MarketAggregatorDriver(Aggregators(visibility=broken_visibility))
    aggregates = await driver.aggregate(sample_outcomes(), MARKETS)

    shoes = aggregates["US"].categories["shoes"]
    assert shoes.visibility is None
    assert shoes.errors == {"visibility": "bad ranking data"}
    assert shoes.competitive is not None
    assert aggregates["US"].reputation is not None
    assert aggregates["FR"].reputation is not None


@pytest.mark.asyncio
async def test_async_aggregators_run_markets_concurrently():
    arrived = {"US": asyncio.Event(), "FR": asyncio.Event()}

    async def rendezvous(outcomes, context):
        arrived[context.market_code].set()
        other = "FR" if context.market_code == "US" else "US"
        await asyncio.wait_for(arrived[other].wait(), timeout=1)
        return {"market": context.market_code}

    driver = MarketAggregatorDriver(Aggregators(reputation=rendezvous))
    aggregates = await driver.aggregate(sample_outcomes(), MARKETS)

    assert aggregates["US"].reputation == {"market": "US"}
    assert aggregates["FR"].reputation == {"market": "FR"}


@pytest.mark.asyncio
async def test_markets_without_outcomes_are_still_reported():
    driver = MarketAggregatorDriver()
    aggregates = await driver.aggregate([], {"DE": {"entity": "Acme"}})

    assert aggregates["DE"].reputation is None
    assert aggregates["DE"].categories == {}


def test_competitive_counts_unknown_choices_as_other():
    outcomes = [
        outcome("US", QuestionType.COMPETITIVE, {"entity_choice": "Puma"}, {"entity_choice": ""}, category_id="shoes"),
    ]
    context = AggregationContext(
        market_code="US",
        market=MARKETS["US"],
        question_type=QuestionType.COMPETITIVE,
        category_id="shoes",
        competitors=("Nike",),
    )
    result = aggregate_competitive(outcomes, context)
    assert result["choices"] == {"other": 1, "none": 1}
    assert result["entity_wins"] == 0


def test_visibility_without_answers():
    outcomes = [outcome("US", QuestionType.VISIBILITY, None, None, category_id="shoes")]
    context = AggregationContext(market_code="US", market=MARKETS["US"], question_type=QuestionType.VISIBILITY)
    result = aggregate_visibility(outcomes, context)
    assert result["visibility_rate"] == 0.0
    assert result["failures"] == {"gemini:parse_error": 1, "openai:parse_error": 1}


def test_summary_counts_document_sources():
    doc = {"sources_cited_news": [{"url": "https://www.news.com/a", "title": "A"}]}
    summary = summarize_outcomes([outcome("US", QuestionType.REPUTATION, doc, None)])
    assert summary["citations_by_domain"] == {"news.com": 1}
    assert summary["source_types"] == {"Journalism": 1}

"""Turn an onboarding config into the flat list of ``QuestionItem``s for a run."""
from __future__ import annotations

import json
from typing import Any, Mapping

from brandpulse.models.domain import QuestionItem, QuestionType
from brandpulse.models.schemas import AnalysisConfig, Market, QuestionSpec
from brandpulse.services.prompt_store import render_prompt, render_section

ITEM_ID_SEPARATOR = ":"


def item_id(market_code: str, question_type: QuestionType, category_id: str | None, question_id: str) -> str:
    return ITEM_ID_SEPARATOR.join(
        (market_code, question_type.value, category_id or "-", question_id)
    )


def parse_item_id(value: str) -> tuple[str, QuestionType, str | None, str] | None:
    """Inverse of ``item_id``; ``None`` for ids written by other tools."""
    parts = value.split(ITEM_ID_SEPARATOR, 3)
    if len(parts) != 4:
        return None
    market_code, type_value, category_id, question_id = parts
    try:
        question_type = QuestionType.parse(type_value)
    except ValueError:
        return None
    return market_code, question_type, None if category_id == "-" else category_id, question_id


def _filters(config: Mapping[str, Any]) -> str:
    filters: list[str] = []
    country = config.get("country")
    language = config.get("language")
    if country:
        filters.append(render_prompt("shared.filter_country", country=country))
    if language:
        filters.append(render_prompt("shared.filter_language", language=language))
        if str(language).lower() != "english":
            filters.append(render_prompt("shared.filter_local_sources", language=language))
    return f" {'. '.join(filters)}." if filters else ""


def _entity_analysis_template(entities: list[str]) -> str:
    point = {"point": "", "sources": [{"url": "https://example.com/source", "title": "Source title"}]}
    template = {
        name: {
            "pros": [dict(point, point="Positive aspect of this brand")],
            "cons": [dict(point, point="Negative aspect of this brand")],
        }
        for name in entities
    }
    return json.dumps(template, indent=2)


def build_prompt(question: QuestionSpec | str, entity: str, config: Mapping[str, Any]) -> str:
    """Render the provider prompt for one question.

    ``config["analysis_type"]`` selects the template; ``country``,
    ``language``, ``category`` and ``competitors`` fill it in. Pure and
    deterministic for a given catalog.
    """
    text = question.question if isinstance(question, QuestionSpec) else str(question)
    question_type = QuestionType.parse(str(config.get("analysis_type", QuestionType.REPUTATION.value)))
    common = {
        "question": text,
        "entity": entity,
        "filters": _filters(config),
        "output_rules": render_prompt("shared.output_rules"),
        "source_rules": render_prompt("shared.source_rules"),
    }

    if question_type == QuestionType.REPUTATION:
        return render_prompt("analysis.reputation", **common)
    if question_type == QuestionType.CATEGORY_DETECTION:
        return render_prompt("analysis.category_detection", **common)

    category = str(config.get("category") or "")
    if question_type == QuestionType.VISIBILITY:
        return render_prompt("analysis.visibility", category=category, **common)

    entities = [entity, *[c for c in config.get("competitors", ()) if c != entity]]
    return render_prompt(
        "analysis.competitive",
        category=category,
        category_context=f" for {category}" if category else "",
        entity_list=", ".join(entities),
        entity_analysis=_entity_analysis_template(entities),
        **common,
    )


def category_detection_questions(entity: str) -> list[QuestionSpec]:
    rendered = render_section("questions.category_detection", entity=entity)
    return [QuestionSpec(id=qid, question=text) for qid, text in rendered.items()]


def _market_config(config: AnalysisConfig, market: Market) -> dict[str, Any]:
    return {
        "entity": config.entity,
        "market": market.code,
        "country": market.country,
        "language": market.language,
    }


def _item(
    question_type: QuestionType,
    market: Market,
    question: QuestionSpec,
    entity: str,
    item_config: dict[str, Any],
    category_id: str | None = None,
    category_name: str | None = None,
) -> QuestionItem:
    item_config = {**item_config, "analysis_type": question_type.value}
    return QuestionItem(
        id=item_id(market.code, question_type, category_id, question.id),
        market_code=market.code,
        type=question_type,
        prompt_text=build_prompt(question, entity, item_config),
        question_text=question.question,
        category_id=category_id,
        category_name=category_name,
        config=item_config,
    )


def collect_question_items(config: AnalysisConfig) -> list[QuestionItem]:
    """Every question for every market, in a stable order.

    Per market: reputation questions, the three category-detection questions,
    then visibility and competitive questions for each category family.
    """
    items: list[QuestionItem] = []
    detection = category_detection_questions(config.entity)

    for market in config.markets:
        market_config = _market_config(config, market)

        for question in config.reputation_questions.get(market.code, []):
            items.append(_item(QuestionType.REPUTATION, market, question, config.entity, market_config))

        for question in detection:
            items.append(_item(QuestionType.CATEGORY_DETECTION, market, question, config.entity, market_config))

        market_questions = config.category_questions.get(market.code, {})
        for category in config.category_families:
            category_name = category.name_for(market.code)
            category_config = {
                **market_config,
                "category": category_name,
                "competitors": config.competitors_for(category.id, market.code),
            }
            questions = market_questions.get(category.id)
            if questions is None:
                continue
            for question_type, specs in (
                (QuestionType.VISIBILITY, questions.visibility),
                (QuestionType.COMPETITIVE, questions.competitive),
            ):
                for question in specs:
                    items.append(
                        _item(
                            question_type,
                            market,
                            question,
                            config.entity,
                            category_config,
                            category_id=category.id,
                            category_name=category_name,
                        )
                    )
    return items


def market_definitions(config: AnalysisConfig) -> dict[str, dict[str, Any]]:
    """Per-market context handed to the aggregation functions."""
    definitions: dict[str, dict[str, Any]] = {}
    for market in config.markets:
        definitions[market.code] = {
            **_market_config(config, market),
            "is_primary": market.is_primary,
            "categories": {
                category.id: {
                    "name": category.name_for(market.code),
                    "competitors": config.competitors_for(category.id, market.code),
                }
                for category in config.category_families
            },
        }
    return definitions

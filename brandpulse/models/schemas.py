from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ConfigModel(BaseModel):
    """Accepts both snake_case and the onboarding wizard's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Analysis configuration ---


class Market(_ConfigModel):
    code: str
    country: str = ""
    language: str = "English"
    is_primary: bool = False


class CategoryTranslation(_ConfigModel):
    name: str


class CategoryFamily(_ConfigModel):
    id: str
    canonical_name: str
    translations: dict[str, CategoryTranslation] = Field(default_factory=dict)

    def name_for(self, market_code: str) -> str:
        translation = self.translations.get(market_code)
        return translation.name if translation and translation.name else self.canonical_name


class QuestionSpec(_ConfigModel):
    id: str
    question: str


class CategoryQuestions(_ConfigModel):
    visibility: list[QuestionSpec] = Field(default_factory=list)
    competitive: list[QuestionSpec] = Field(default_factory=list)


class AnalysisConfig(_ConfigModel):
    entity: str
    markets: list[Market]
    category_families: list[CategoryFamily] = Field(default_factory=list)
    # category id -> market code -> competitor names
    competitors: dict[str, dict[str, list[str]]] = Field(default_factory=dict)
    # market code -> questions
    reputation_questions: dict[str, list[QuestionSpec]] = Field(default_factory=dict)
    # market code -> category id -> questions
    category_questions: dict[str, dict[str, CategoryQuestions]] = Field(default_factory=dict)

    def competitors_for(self, category_id: str, market_code: str) -> list[str]:
        return list(self.competitors.get(category_id, {}).get(market_code, []))

    def primary_market(self) -> Market | None:
        for market in self.markets:
            if market.is_primary:
                return market
        return self.markets[0] if self.markets else None


# --- Requests ---


class AnalysisStartRequest(_ConfigModel):
    report_id: str | None = None
    config: AnalysisConfig
    gemini_api_key: str | None = None
    openai_api_key: str | None = None


# --- Responses ---


class AnalysisStartResponse(BaseModel):
    report_id: str
    status: str
    total_questions: int


class HealthResponse(BaseModel):
    status: str
    database: bool
    providers: dict[str, bool]

from __future__ import annotations

from typing import Any

import pytest

from brandpulse.providers.base import BaseProvider, ProviderResponse
from brandpulse.providers.retry import RetryPolicy


class RecordingStore:
    """In-memory AnalysisStore that records every write."""

    def __init__(self, raw_rows: list[dict[str, Any]] | None = None):
        self.raw_results: list[dict[str, Any]] = []
        self.analyses: list[tuple[str, str, Any, str | None]] = []
        self.statuses: list[tuple[str, int | None, str | None]] = []
        self.sources: list[Any] = []
        self._raw_rows = raw_rows or []

    async def save_raw_result(
        self,
        report_id,
        question_id,
        question_text,
        question_type,
        parsed_a,
        parsed_b,
        citations_a,
        citations_b,
    ):
        self.raw_results.append(
            {
                "report_id": report_id,
                "question_id": question_id,
                "question_text": question_text,
                "question_type": question_type,
                "gemini_response": parsed_a,
                "openai_response": parsed_b,
                "gemini_sources": [c.to_dict() for c in citations_a],
                "openai_sources": [c.to_dict() for c in citations_b],
            }
        )

    async def save_market_analysis(self, report_id, market_code, analysis_type, payload, category_id=None):
        self.analyses.append((market_code, analysis_type, payload, category_id))

    async def update_status(self, report_id, status, progress=None, error=None):
        self.statuses.append((status, progress, error))

    async def save_sources(self, report_id, sources):
        self.sources.extend(sources)

    async def get_raw_results(self, report_id):
        return list(self._raw_rows)


class ScriptedProvider(BaseProvider):
    """Provider that replays a script of texts, responses or exceptions.

    The last step repeats once the script runs out.
    """

    def __init__(self, name: str, script):
        super().__init__(RetryPolicy(max_attempts=1))
        self.name = name
        self.script = list(script)
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def call(self, prompt, api_key, options=None):
        self.prompts.append(prompt)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, ProviderResponse):
            return step
        return ProviderResponse(text=step, finish_reason="STOP", request_id=self.next_request_id())


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def fake_sleep():
    return SleepRecorder()


@pytest.fixture
def scripted():
    return ScriptedProvider


@pytest.fixture
def store_factory():
    return RecordingStore

"""Batch fan-out of question items to both providers."""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Sequence

from loguru import logger

from brandpulse.config import settings
from brandpulse.models.domain import (
    BatchOutcome,
    FailureKind,
    ItemState,
    ProviderResult,
    QuestionItem,
)
from brandpulse.providers.base import CallOptions
from brandpulse.providers.pair import ProviderCredentials, ProviderPair
from brandpulse.services.database import AnalysisStore, NullStore, fire_and_forget

ItemCallback = Callable[[BatchOutcome, int, int], Any]


def partition(items: Sequence[QuestionItem], batch_size: int) -> list[list[QuestionItem]]:
    size = max(int(batch_size), 1)
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchOrchestrator:
    """Runs every item through ``ProviderPair.call_both`` in sequential batches.

    Items inside a batch run concurrently. Every item ends in an outcome:
    an exception inside one item becomes a ``parsed_failed`` outcome with both
    provider slots failed, and never aborts its siblings.

    Each completed outcome is handed to ``store.save_raw_result`` without
    awaiting it, then to ``on_item_complete(outcome, completed, total)``.
    """

    def __init__(
        self,
        pair: ProviderPair,
        credentials: ProviderCredentials,
        *,
        report_id: str = "",
        store: AnalysisStore | None = None,
        on_item_complete: ItemCallback | None = None,
        gemini_options: CallOptions | None = None,
        openai_options: CallOptions | None = None,
    ):
        self.pair = pair
        self.credentials = credentials
        self.report_id = report_id
        self.store = store or NullStore()
        self.on_item_complete = on_item_complete
        self.gemini_options = gemini_options
        self.openai_options = openai_options
        self.states: dict[str, ItemState] = {}
        self._completed = 0
        self._total = 0

    async def run(
        self,
        items: Sequence[QuestionItem],
        batch_size: int | None = None,
    ) -> list[BatchOutcome]:
        batches = partition(items, batch_size or settings.batch_size)
        self._total = len(items)
        self._completed = 0
        self.states = {item.id: ItemState.PENDING for item in items}

        outcomes: list[BatchOutcome] = []
        for index, batch in enumerate(batches, start=1):
            logger.info(
                f"[{self.report_id}] batch {index}/{len(batches)}: {len(batch)} items "
                f"({self._completed}/{self._total} done)"
            )
            results = await asyncio.gather(*(self._run_item(item) for item in batch))
            outcomes.extend(results)

        succeeded = sum(1 for o in outcomes if o.any_succeeded)
        logger.info(f"[{self.report_id}] all batches done: {succeeded}/{len(outcomes)} items with an answer")
        return outcomes

    async def _run_item(self, item: QuestionItem) -> BatchOutcome:
        self.states[item.id] = ItemState.CALLING
        try:
            gemini, openai = await self.pair.call_both(
                item.prompt_text,
                self.credentials,
                self.gemini_options,
                self.openai_options,
            )
            state = ItemState.PARSED_OK if (gemini.succeeded or openai.succeeded) else ItemState.PARSED_FAILED
            outcome = BatchOutcome(item=item, gemini=gemini, openai=openai, state=state)
        except Exception as exc:
            logger.error(f"[{self.report_id}] item {item.id} failed: {exc}")
            message = str(exc) or exc.__class__.__name__
            outcome = BatchOutcome(
                item=item,
                gemini=ProviderResult.failed("gemini", FailureKind.UNKNOWN, message, attempts=0),
                openai=ProviderResult.failed("openai", FailureKind.UNKNOWN, message, attempts=0),
                state=ItemState.PARSED_FAILED,
                error=message,
            )

        self.states[item.id] = outcome.state
        self._persist(outcome)
        self._completed += 1
        await self._notify(outcome)
        return outcome

    def _persist(self, outcome: BatchOutcome) -> None:
        fire_and_forget(f"raw result {outcome.item.id}", self._save(outcome), report_id=self.report_id)

    async def _save(self, outcome: BatchOutcome) -> None:
        item = outcome.item
        await self.store.save_raw_result(
            self.report_id,
            item.id,
            item.question_text or item.prompt_text,
            item.type.value,
            outcome.gemini.parsed_document,
            outcome.openai.parsed_document,
            outcome.sources_for("gemini"),
            outcome.sources_for("openai"),
        )
        self.states[item.id] = ItemState.PERSISTED

    async def _notify(self, outcome: BatchOutcome) -> None:
        if self.on_item_complete is None:
            return
        try:
            result = self.on_item_complete(outcome, self._completed, self._total)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning(f"[{self.report_id}] progress callback failed: {exc}")

"""PostgreSQL persistence for analysis runs using asyncpg."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Iterable, Protocol

import asyncpg
from loguru import logger

from brandpulse.config import settings
from brandpulse.models.domain import Citation
from brandpulse.services import logger as log_service


# Connection pool
_pool: asyncpg.Pool | None = None


def _db_available() -> bool:
    """Check if database is configured and available."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


def _coerce_json(value: Any) -> Any:
    """JSONB columns come back as strings unless a codec is registered."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _citations_payload(citations: Iterable[Citation]) -> list[dict[str, Any]]:
    return [c.to_dict() for c in citations]


class AnalysisStore(Protocol):
    async def save_raw_result(
        self,
        report_id: str,
        question_id: str,
        question_text: str,
        question_type: str,
        parsed_a: Any,
        parsed_b: Any,
        citations_a: Iterable[Citation],
        citations_b: Iterable[Citation],
    ) -> None: ...

    async def save_market_analysis(
        self,
        report_id: str,
        market_code: str,
        analysis_type: str,
        payload: Any,
        category_id: str | None = None,
    ) -> None: ...

    async def update_status(
        self,
        report_id: str,
        status: str,
        progress: int | None = None,
        error: str | None = None,
    ) -> None: ...

    async def save_sources(self, report_id: str, sources: Iterable[Citation]) -> None: ...

    async def get_raw_results(self, report_id: str) -> list[dict[str, Any]]: ...


class DatabaseStore:
    """``AnalysisStore`` backed by the shared asyncpg pool."""

    async def save_raw_result(
        self,
        report_id: str,
        question_id: str,
        question_text: str,
        question_type: str,
        parsed_a: Any,
        parsed_b: Any,
        citations_a: Iterable[Citation],
        citations_b: Iterable[Citation],
    ) -> None:
        started = time.monotonic()
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO llm_responses (
                    report_id, question_id, question_text, question_type,
                    gemini_response, openai_response, gemini_sources, openai_sources
                )
                VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb, $8::jsonb)
                """,
                report_id,
                question_id,
                question_text,
                question_type,
                _dumps(parsed_a),
                _dumps(parsed_b),
                _dumps(_citations_payload(citations_a)),
                _dumps(_citations_payload(citations_b)),
            )
        log_service.log_db_operation(
            "insert",
            "llm_responses",
            "success",
            details=f"report={report_id} question={question_id} ({_elapsed_ms(started)}ms)",
        )

    async def save_market_analysis(
        self,
        report_id: str,
        market_code: str,
        analysis_type: str,
        payload: Any,
        category_id: str | None = None,
    ) -> None:
        started = time.monotonic()
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO market_analyses (report_id, market_code, analysis_type, category_id, data)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                """,
                report_id,
                market_code,
                analysis_type,
                category_id,
                _dumps(payload),
            )
        log_service.log_db_operation(
            "insert",
            "market_analyses",
            "success",
            details=f"report={report_id} market={market_code} type={analysis_type} ({_elapsed_ms(started)}ms)",
        )

    async def update_status(
        self,
        report_id: str,
        status: str,
        progress: int | None = None,
        error: str | None = None,
    ) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reports
                SET status = $2,
                    progress = COALESCE($3, progress),
                    error_message = $4,
                    updated_at = NOW()
                WHERE id = $1
                """,
                report_id,
                status,
                progress,
                error,
            )
        log_service.log_db_operation("update", "reports", "success", details=f"report={report_id} status={status}")

    async def save_sources(self, report_id: str, sources: Iterable[Citation]) -> None:
        rows = [
            (report_id, s.url, s.domain, s.title, s.source_type, s.relevance_score)
            for s in sources
            if s.url
        ]
        if not rows:
            return
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO sources (report_id, url, domain, title, source_type, relevance_score)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (report_id, url) DO UPDATE SET source_type = EXCLUDED.source_type
                """,
                rows,
            )
        log_service.log_db_operation("upsert", "sources", "success", details=f"report={report_id} count={len(rows)}")

    async def get_raw_results(self, report_id: str) -> list[dict[str, Any]]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT question_id, question_text, question_type,
                       gemini_response, openai_response, gemini_sources, openai_sources
                FROM llm_responses
                WHERE report_id = $1
                ORDER BY created_at
                """,
                report_id,
            )
        results = []
        for row in rows:
            record = dict(row)
            for key in ("gemini_response", "openai_response", "gemini_sources", "openai_sources"):
                record[key] = _coerce_json(record.get(key))
            results.append(record)
        return results


class NullStore:
    """Store used when no database is configured: writes are dropped."""

    async def save_raw_result(self, report_id: str, question_id: str, *args: Any, **kwargs: Any) -> None:
        logger.debug(f"[{report_id}] no database configured, raw result {question_id} not persisted")

    async def save_market_analysis(self, report_id: str, market_code: str, *args: Any, **kwargs: Any) -> None:
        return None

    async def update_status(
        self,
        report_id: str,
        status: str,
        progress: int | None = None,
        error: str | None = None,
    ) -> None:
        return None

    async def save_sources(self, report_id: str, sources: Iterable[Citation]) -> None:
        return None

    async def get_raw_results(self, report_id: str) -> list[dict[str, Any]]:
        return []


def default_store() -> AnalysisStore:
    return DatabaseStore() if _db_available() else NullStore()


# --- Fire-and-forget helpers ---

_pending_writes: dict[str | None, set[asyncio.Task]] = {}


async def _guarded(label: str, coro) -> None:
    try:
        await coro
    except Exception as exc:
        logger.error(f"Persistence failed ({label}): {exc}")


def _forget(report_id: str | None, task: asyncio.Task) -> None:
    tasks = _pending_writes.get(report_id)
    if tasks is None:
        return
    tasks.discard(task)
    if not tasks:
        del _pending_writes[report_id]


def fire_and_forget(label: str, coro, report_id: str | None = None) -> asyncio.Task:
    """Schedule a write without awaiting it; failures are logged, never raised.

    Writes are tracked per ``report_id`` so one run can drain its own writes
    without waiting on concurrent runs.
    """
    task = asyncio.create_task(_guarded(label, coro))
    _pending_writes.setdefault(report_id, set()).add(task)
    task.add_done_callback(lambda done: _forget(report_id, done))
    return task


async def drain_pending_writes(report_id: str | None = None) -> None:
    """Wait for the writes of ``report_id`` to settle, or for every write when omitted."""
    while True:
        if report_id is None:
            tasks = [task for group in _pending_writes.values() for task in group]
        else:
            tasks = list(_pending_writes.get(report_id, ()))
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)

import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest

from brandpulse.models.domain import Citation
from brandpulse.services import database
from brandpulse.services.database import (
    DatabaseStore,
    NullStore,
    drain_pending_writes,
    fire_and_forget,
)


class FakeConnection:
    def __init__(self, rows=()):
        self.executed = []
        self.rows = list(rows)

    async def execute(self, query, *args):
        self.executed.append((query, args))

    async def executemany(self, query, rows):
        self.executed.append((query, list(rows)))

    async def fetch(self, query, *args):
        return self.rows


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def patched_pool(conn):
    async def get_pool():
        return FakePool(conn)

    return patch.object(database, "_get_pool", get_pool)


@pytest.mark.asyncio
async def test_fire_and_forget_logs_and_swallows_failures():
    async def broken_write():
        raise RuntimeError("connection refused")

    task = fire_and_forget("broken", broken_write())
    await drain_pending_writes()

    assert task.done()
    assert task.exception() is None


@pytest.mark.asyncio
async def test_drain_waits_for_every_write():
    written = []

    async def write(value):
        written.append(value)

    for value in range(3):
        fire_and_forget(f"write {value}", write(value))
    await drain_pending_writes()

    assert sorted(written) == [0, 1, 2]


@pytest.mark.asyncio
async def test_drain_for_one_report_ignores_other_reports():
    release = asyncio.Event()
    written = []

    async def slow_write():
        await release.wait()
        written.append("r2")

    async def quick_write():
        written.append("r1")

    other = fire_and_forget("slow r2 write", slow_write(), report_id="r2")
    fire_and_forget("quick r1 write", quick_write(), report_id="r1")

    await asyncio.wait_for(drain_pending_writes("r1"), timeout=1)

    assert written == ["r1"]
    assert not other.done()

    release.set()
    await drain_pending_writes()
    assert written == ["r1", "r2"]


@pytest.mark.asyncio
async def test_save_raw_result_serializes_documents_and_sources():
    conn = FakeConnection()
    citation = Citation(url="https://a.com/x", domain="a.com", title="A", source_type="grounded_direct")

    with patched_pool(conn):
        await DatabaseStore().save_raw_result("r1", "US:reputation:-:Q1", "Q?", "reputation", {"a": 1}, None, [citation], [])

    query, args = conn.executed[0]
    assert "INSERT INTO llm_responses" in query
    assert args[:4] == ("r1", "US:reputation:-:Q1", "Q?", "reputation")
    assert json.loads(args[4]) == {"a": 1}
    assert args[5] is None
    assert json.loads(args[6])[0]["url"] == "https://a.com/x"
    assert json.loads(args[7]) == []


@pytest.mark.asyncio
async def test_save_sources_skips_citations_without_url():
    conn = FakeConnection()
    sources = [
        Citation(url="https://a.com/x", domain="a.com", title="A"),
        Citation(url=None, domain="", title="orphan"),
    ]

    with patched_pool(conn):
        await DatabaseStore().save_sources("r1", sources)
        await DatabaseStore().save_sources("r1", [])

    assert len(conn.executed) == 1
    _query, rows = conn.executed[0]
    assert rows == [("r1", "https://a.com/x", "a.com", "A", "Other", 0.9)]


@pytest.mark.asyncio
async def test_get_raw_results_decodes_json_columns():
    conn = FakeConnection(
        rows=[
            {
                "question_id": "US:reputation:-:Q1",
                "question_text": "Q?",
                "question_type": "reputation",
                "gemini_response": '{"sentiment": "positive"}',
                "openai_response": None,
                "gemini_sources": "[]",
                "openai_sources": "not json",
            }
        ]
    )

    with patched_pool(conn):
        [row] = await DatabaseStore().get_raw_results("r1")

    assert row["gemini_response"] == {"sentiment": "positive"}
    assert row["openai_response"] is None
    assert row["gemini_sources"] == []
    assert row["openai_sources"] is None


@pytest.mark.asyncio
async def test_null_store_drops_writes():
    store = NullStore()
    await store.save_raw_result("r1", "q1", "Q?", "reputation", {}, {}, [], [])
    await store.update_status("r1", "completed", 100)
    assert await store.get_raw_results("r1") == []


def test_default_store_follows_database_url():
    with patch.object(database.settings, "database_url", ""):
        assert isinstance(database.default_store(), NullStore)
    with patch.object(database.settings, "database_url", "postgresql://localhost/brandpulse"):
        assert isinstance(database.default_store(), DatabaseStore)

import json

import pytest

from app.core import models
from app.core.errors import KnowledgeLoadError
from app.core.generation.knowledge import (
    DatabaseKnowledgeStore,
    FileKnowledgeStore,
    KnowledgeSelector,
    SnapshotKnowledgeStore,
    entry_from_mapping,
    relevance_tags_for,
    select_entries,
)
from app.core.generation.normalize import normalize_input
from app.core.schemas import KnowledgePriority

from tests.factories import CORPUS_PATH, make_entry, make_request


class BrokenStore:
    async def find_by_tags(self, tags):
        raise ConnectionError("database is down")

    async def load_all(self):
        raise ConnectionError("database is down")


def test_tags_for_customer_list():
    intent = normalize_input(make_request())
    tags = relevance_tags_for(intent, focus_tags=[" Grid ", ""])

    assert tags == frozenset({"xframe5-ui", "list", "xframe5-ui:list", "grid"})


def test_selection_orders_by_priority_then_name():
    entries = [
        make_entry(1, {"list"}, KnowledgePriority.LOW, name="a"),
        make_entry(2, {"list"}, KnowledgePriority.ESSENTIAL, name="z"),
        make_entry(3, {"list"}, KnowledgePriority.ESSENTIAL, name="b"),
        make_entry(4, {"other"}, KnowledgePriority.ESSENTIAL, name="c"),
    ]
    selection = select_entries(entries, {"list"}, budget=100)

    assert selection.ids == [3, 2, 1]
    assert selection.total_tokens == 30


def test_budget_stops_at_first_entry_that_does_not_fit():
    entries = [
        make_entry(1, {"list"}, KnowledgePriority.ESSENTIAL, tokens=60),
        make_entry(2, {"list"}, KnowledgePriority.HIGH, tokens=50),
        make_entry(3, {"list"}, KnowledgePriority.LOW, tokens=10),
    ]
    selection = select_entries(entries, {"list"}, budget=100)

    # Entry 3 would fit but selection stops at entry 2
    assert selection.ids == [1]
    assert selection.total_tokens <= 100


def test_entry_from_mapping_estimates_tokens_and_defaults_priority():
    entry = entry_from_mapping(
        {"id": 7, "name": "x", "content": "a" * 40, "relevance_tags": ["LIST"], "priority": "urgent"}
    )

    assert entry.token_estimate == 10
    assert entry.priority == KnowledgePriority.MEDIUM
    assert entry.relevance_tags == frozenset({"list"})


@pytest.mark.asyncio
async def test_selector_uses_primary_when_it_has_entries(knowledge_store):
    selector = KnowledgeSelector(knowledge_store, FileKnowledgeStore(CORPUS_PATH), budget=1000)
    selection = await selector.select(frozenset({"xframe5-ui", "list"}))

    assert selection.source == "primary"
    assert selection.ids == [1, 2]


@pytest.mark.asyncio
async def test_selector_falls_back_when_primary_fails():
    selector = KnowledgeSelector(BrokenStore(), FileKnowledgeStore(CORPUS_PATH), budget=4000)
    selection = await selector.select(frozenset({"xframe5-ui", "list", "xframe5-ui:list"}))

    assert selection.source == "fallback"
    assert selection.entries
    assert all(entry.relevance_tags & {"xframe5-ui", "list", "xframe5-ui:list"} for entry in selection.entries)


@pytest.mark.asyncio
async def test_selector_falls_back_when_primary_is_empty():
    selector = KnowledgeSelector(SnapshotKnowledgeStore(), FileKnowledgeStore(CORPUS_PATH))
    selection = await selector.select(frozenset({"spring-backend"}))

    assert selection.source == "fallback"


@pytest.mark.asyncio
async def test_selector_raises_when_both_stores_fail(tmp_path):
    selector = KnowledgeSelector(BrokenStore(), FileKnowledgeStore(tmp_path / "missing.json"))

    with pytest.raises(KnowledgeLoadError):
        await selector.select(frozenset({"list"}))


@pytest.mark.asyncio
async def test_selector_raises_without_fallback():
    selector = KnowledgeSelector(SnapshotKnowledgeStore())

    with pytest.raises(KnowledgeLoadError):
        await selector.select(frozenset({"list"}))


@pytest.mark.asyncio
async def test_budget_excluding_every_entry_is_not_a_selection():
    """An essential entry larger than the budget leaves nothing to ground the prompt"""
    store = SnapshotKnowledgeStore([make_entry(1, {"xframe5-ui"}, KnowledgePriority.ESSENTIAL, tokens=50)])

    with pytest.raises(KnowledgeLoadError):
        await KnowledgeSelector(store, budget=10).select(frozenset({"xframe5-ui"}))


@pytest.mark.asyncio
async def test_budget_excluding_primary_entries_reads_fallback(tmp_path):
    path = tmp_path / "corpus.json"
    path.write_text(
        json.dumps({"entries": [{"id": 7, "name": "short", "content": "tiny", "relevance_tags": ["list"]}]}),
        encoding="utf-8",
    )
    primary = SnapshotKnowledgeStore([make_entry(1, {"list"}, KnowledgePriority.ESSENTIAL, tokens=50)])

    selection = await KnowledgeSelector(primary, FileKnowledgeStore(path), budget=10).select(frozenset({"list"}))

    assert selection.source == "fallback"
    assert selection.ids == [7]


@pytest.mark.asyncio
async def test_budget_excluding_primary_and_fallback_raises(tmp_path):
    path = tmp_path / "corpus.json"
    path.write_text(
        json.dumps({"entries": [{"id": 7, "name": "long", "content": "x" * 400, "relevance_tags": ["list"]}]}),
        encoding="utf-8",
    )
    primary = SnapshotKnowledgeStore([make_entry(1, {"list"}, tokens=50)])

    with pytest.raises(KnowledgeLoadError):
        await KnowledgeSelector(primary, FileKnowledgeStore(path), budget=10).select(frozenset({"list"}))


@pytest.mark.asyncio
async def test_file_store_reads_entries(tmp_path):
    path = tmp_path / "corpus.json"
    path.write_text(
        json.dumps({"entries": [{"id": 1, "name": "n", "content": "text", "relevance_tags": ["crud"]}]}),
        encoding="utf-8",
    )
    store = FileKnowledgeStore(path)

    assert store.exists()
    assert [e.id for e in await store.find_by_tags(frozenset({"crud"}))] == [1]
    assert await store.find_by_tags(frozenset({"list"})) == []


@pytest.mark.asyncio
async def test_snapshot_refresh_swaps_entries():
    store = SnapshotKnowledgeStore([make_entry(1, {"list"})])
    source = SnapshotKnowledgeStore([make_entry(2, {"list"}), make_entry(3, {"crud"})])

    count = await store.refresh_from(source)

    assert count == 2
    assert [e.id for e in store.snapshot] == [2, 3]


@pytest.mark.asyncio
async def test_database_store_returns_only_active_entries(session_factory):
    async with session_factory() as session:
        session.add_all(
            [
                models.KnowledgeBase(
                    name="grid", category="component", content="grid text",
                    relevance_tags=["list"], priority="high", token_estimate=5,
                ),
                models.KnowledgeBase(
                    name="old grid", category="component", content="old",
                    relevance_tags=["list"], priority="high", token_estimate=5, is_active=False,
                ),
                models.KnowledgeBase(
                    name="mapper", category="component", content="mapper text",
                    relevance_tags=["crud"], priority="essential", token_estimate=5,
                ),
            ]
        )
        await session.commit()

    store = DatabaseKnowledgeStore(session_factory)
    entries = await store.find_by_tags(frozenset({"list"}))

    assert [e.name for e in entries] == ["grid"]
    assert entries[0].priority == KnowledgePriority.HIGH
    assert len(await store.load_all()) == 2

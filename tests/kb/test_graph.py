"""
Unit tests for hybrid_memory.kb.graph

Exercises the SQLite graph store against a temporary database file:
upsert semantics, relationship enrichment, traversal guards and the
batch import transaction.
"""

from __future__ import annotations

import pytest
import pytest_asyncio


@pytest_asyncio.fixture
async def graph(tmp_path):
    from hybrid_memory.kb.graph import GraphStore
    store = GraphStore(str(tmp_path / "memory.db"))
    await store.initialize()
    yield store
    await store.close()


async def _chain(graph, *ids, rel_type="LINK"):
    """Create entities *ids* and link each to the next."""
    for entity_id in ids:
        await graph.create_entity(entity_id, "Node", entity_id.upper())
    for a, b in zip(ids, ids[1:]):
        await graph.create_relationship(a, b, rel_type)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class TestEntities:

    @pytest.mark.asyncio
    async def test_create_and_find(self, graph):
        await graph.create_entity("file:a.js", "File", "a.js", {"path": "a.js", "size": 3})
        entity = await graph.find_entity("file:a.js")
        assert entity is not None
        assert entity.type == "File"
        assert entity.name == "a.js"
        assert entity.properties == {"path": "a.js", "size": 3}
        assert entity.created_at is not None

    @pytest.mark.asyncio
    async def test_find_missing_returns_none(self, graph):
        assert await graph.find_entity("nope") is None

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, graph):
        await graph.create_entity("e1", "Function", "old", {"v": 1})
        first = await graph.find_entity("e1")
        await graph.create_entity("e1", "Function", "new", {"v": 2})
        second = await graph.find_entity("e1")

        stats = await graph.get_stats()
        assert stats["entity_count"] == 1
        assert second.name == "new"
        assert second.properties == {"v": 2}
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_nested_properties_round_trip(self, graph):
        props = {"tags": ["a", "b"], "meta": {"depth": 2, "ok": True}, "none": None}
        await graph.create_entity("e1", "Memory", "m", props)
        entity = await graph.find_entity("e1")
        assert entity.properties == props

    @pytest.mark.asyncio
    async def test_find_entities_by_type(self, graph):
        await graph.create_entity("f1", "Function", "one")
        await graph.create_entity("c1", "Class", "Two")
        await graph.create_entity("f2", "Function", "three")
        found = await graph.find_entities_by_type("Function")
        assert [e.entity_id for e in found] == ["f1", "f2"]

    @pytest.mark.asyncio
    async def test_search_is_substring_and_type_filtered(self, graph):
        await graph.create_entity("f1", "Function", "processData")
        await graph.create_entity("c1", "Class", "DataProcessor")
        await graph.create_entity("f2", "Function", "render")

        names = {e.name for e in await graph.search_entities("process")}
        assert names == {"processData", "DataProcessor"}

        only_functions = await graph.search_entities("process", type="Function")
        assert [e.entity_id for e in only_functions] == ["f1"]

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, graph):
        await graph.create_entity("a", "Function", "load_data")
        await graph.create_entity("b", "Function", "loadXdata")
        found = await graph.search_entities("load_data")
        assert [e.entity_id for e in found] == ["a"]
        assert await graph.search_entities("%") == []

    @pytest.mark.asyncio
    async def test_search_limit(self, graph):
        for i in range(5):
            await graph.create_entity(f"f{i}", "Function", f"handler{i}")
        assert len(await graph.search_entities("handler", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_delete_entity_keeps_relationships(self, graph):
        await _chain(graph, "a", "b")
        assert await graph.delete_entity("b") is True
        assert await graph.delete_entity("b") is False

        rels = await graph.find_relationships("a")
        assert len(rels) == 1
        assert rels[0].to_id == "b"
        assert rels[0].to_name is None
        assert rels[0].to_properties == {}


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------

class TestRelationships:

    @pytest.mark.asyncio
    async def test_duplicate_triple_is_one_row(self, graph):
        await _chain(graph, "a", "b")
        await graph.create_relationship("a", "b", "LINK", {"weight": 2})
        stats = await graph.get_stats()
        assert stats["relationship_count"] == 1
        rels = await graph.find_relationships("a")
        assert rels[0].properties == {"weight": 2}

    @pytest.mark.asyncio
    async def test_same_endpoints_different_type_are_distinct(self, graph):
        await _chain(graph, "a", "b")
        await graph.create_relationship("a", "b", "OTHER")
        assert (await graph.get_stats())["relationship_count"] == 2

    @pytest.mark.asyncio
    async def test_find_relationships_either_endpoint_enriched(self, graph):
        await _chain(graph, "a", "b", "c")
        rels = await graph.find_relationships("b")
        assert [(r.from_id, r.to_id) for r in rels] == [("a", "b"), ("b", "c")]
        assert rels[0].from_name == "A"
        assert rels[0].to_type == "Node"

    @pytest.mark.asyncio
    async def test_dangling_relationship_is_returned(self, graph):
        await graph.create_entity("a", "Node", "A")
        await graph.create_relationship("a", "ghost", "LINK")
        rels = await graph.find_relationships("a")
        assert len(rels) == 1
        assert rels[0].to_name is None

    @pytest.mark.asyncio
    async def test_other_end(self, graph):
        from hybrid_memory.kb.graph import Relationship
        rel = Relationship("a", "b", "LINK")
        assert rel.other_end("a") == "b"
        assert rel.other_end("b") == "a"


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

class TestTraverse:

    @pytest.mark.asyncio
    async def test_cycle_terminates_without_repeats(self, graph):
        await _chain(graph, "a", "b", "c")
        await graph.create_relationship("c", "a", "LINK")

        rels = await graph.traverse("a", "LINK", max_depth=5)
        keys = [r.key for r in rels]
        assert keys == [("a", "b", "LINK"), ("b", "c", "LINK"), ("c", "a", "LINK")]
        assert len(set(keys)) == len(keys)

    @pytest.mark.asyncio
    async def test_two_node_cycle(self, graph):
        await _chain(graph, "a", "b")
        await graph.create_relationship("b", "a", "LINK")
        rels = await graph.traverse("a", "LINK", max_depth=5)
        assert len(rels) == 2

    @pytest.mark.asyncio
    async def test_depth_bounds_expansion(self, graph):
        await _chain(graph, "a", "b", "c", "d")

        depth0 = await graph.traverse("a", "LINK", max_depth=0)
        assert [r.key for r in depth0] == [("a", "b", "LINK")]

        depth1 = await graph.traverse("a", "LINK", max_depth=1)
        assert [r.key for r in depth1] == [("a", "b", "LINK"), ("b", "c", "LINK")]

    @pytest.mark.asyncio
    async def test_follows_edges_in_both_directions(self, graph):
        await _chain(graph, "a", "b")
        rels = await graph.traverse("b", "LINK", max_depth=1)
        assert [r.key for r in rels] == [("a", "b", "LINK")]

    @pytest.mark.asyncio
    async def test_relationship_type_filter(self, graph):
        await _chain(graph, "a", "b", rel_type="CALLS")
        await graph.create_entity("x", "Import", "x")
        await graph.create_relationship("a", "x", "IMPORTS")

        calls = await graph.traverse("a", "CALLS", max_depth=2)
        assert [r.to_id for r in calls] == ["b"]

        everything = await graph.traverse("a", None, max_depth=2)
        assert {r.type for r in everything} == {"CALLS", "IMPORTS"}

    @pytest.mark.asyncio
    async def test_max_edges_guard(self, graph):
        await graph.create_entity("hub", "Node", "hub")
        for i in range(6):
            await graph.create_entity(f"n{i}", "Node", f"n{i}")
            await graph.create_relationship("hub", f"n{i}", "LINK")

        rels = await graph.traverse("hub", "LINK", max_depth=3, max_edges=2)
        assert len(rels) == 2

    @pytest.mark.asyncio
    async def test_unknown_start(self, graph):
        assert await graph.traverse("missing", "LINK", max_depth=3) == []


# ---------------------------------------------------------------------------
# Stats / bulk
# ---------------------------------------------------------------------------

class TestStatsAndBatch:

    @pytest.mark.asyncio
    async def test_stats(self, graph):
        await graph.create_entity("f", "File", "a.js")
        await graph.create_entity("fn", "Function", "go")
        await graph.create_relationship("f", "fn", "CONTAINS")
        stats = await graph.get_stats()
        assert stats == {
            "entity_count": 2,
            "relationship_count": 1,
            "by_entity_type": {"File": 1, "Function": 1},
            "by_relationship_type": {"CONTAINS": 1},
        }

    @pytest.mark.asyncio
    async def test_batch_import_applies_everything(self, graph):
        from hybrid_memory.kb.graph import Entity, Relationship
        await graph.batch_import(
            [Entity("a", "Node", "A"), Entity("b", "Node", "B", {"k": "v"})],
            [Relationship("a", "b", "LINK")],
        )
        stats = await graph.get_stats()
        assert stats["entity_count"] == 2
        assert stats["relationship_count"] == 1
        assert (await graph.find_entity("b")).properties == {"k": "v"}

    @pytest.mark.asyncio
    async def test_batch_import_is_all_or_nothing(self, graph):
        from hybrid_memory.errors import MemoryImportError
        from hybrid_memory.kb.graph import Entity, Relationship
        await graph.create_entity("keep", "Node", "keep")

        with pytest.raises(MemoryImportError):
            await graph.batch_import(
                [Entity("new", "Node", "new")],
                [Relationship("new", None, "LINK")],  # violates NOT NULL
            )

        stats = await graph.get_stats()
        assert stats["entity_count"] == 1
        assert stats["relationship_count"] == 0
        assert await graph.find_entity("new") is None

        # The store is still writable after the rollback
        await graph.create_entity("after", "Node", "after")
        assert await graph.find_entity("after") is not None

    @pytest.mark.asyncio
    async def test_batch_import_rolls_back_when_commit_fails(self, graph):
        from unittest.mock import patch

        from hybrid_memory.errors import MemoryImportError
        from hybrid_memory.kb.graph import Entity

        conn = graph._conn
        real_execute = conn.execute

        def failing_commit(sql, *args, **kwargs):
            if sql == "COMMIT":
                raise RuntimeError("disk I/O error")
            return real_execute(sql, *args, **kwargs)

        with patch.object(conn, "execute", side_effect=failing_commit):
            with pytest.raises(MemoryImportError):
                await graph.batch_import([Entity("new", "Node", "new")], [])

        assert not conn.in_transaction
        assert await graph.find_entity("new") is None
        await graph.create_entity("after", "Node", "after")
        assert await graph.find_entity("after") is not None

    @pytest.mark.asyncio
    async def test_clear(self, graph):
        await _chain(graph, "a", "b")
        await graph.clear()
        stats = await graph.get_stats()
        assert stats["entity_count"] == 0
        assert stats["relationship_count"] == 0

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path):
        from hybrid_memory.kb.graph import GraphStore
        path = str(tmp_path / "persist.db")
        first = GraphStore(path)
        await first.create_entity("a", "Node", "A")
        await first.close()

        second = GraphStore(path)
        try:
            assert (await second.find_entity("a")).name == "A"
        finally:
            await second.close()

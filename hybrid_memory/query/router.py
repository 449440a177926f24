"""
Query routing: classify a query, dispatch it to the vector index, the graph
store or both, and fuse hybrid results.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, TYPE_CHECKING

from .classification import Intent, IntentClassifier, extract_query_terms
from .fusion import fuse_results

if TYPE_CHECKING:
    from ..kb.graph import Entity, GraphStore
    from ..kb.vector_store import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
DEFAULT_DEPTH = 2
STRUCTURAL_TOP_K = 5


class QueryRouter:
    """
    Routes free-text queries to semantic, structural or hybrid handling.

    Parameters
    ----------
    vector_store:
        Index used for semantic handling.
    graph:
        Graph used for structural handling.
    classifier:
        Intent classifier; a default :class:`IntentClassifier` when omitted.
    """

    def __init__(
        self,
        vector_store: "VectorStore",
        graph: "GraphStore",
        classifier: Optional[IntentClassifier] = None,
    ) -> None:
        self._vector_store = vector_store
        self._graph = graph
        self.classifier = classifier or IntentClassifier()

    async def route(
        self,
        query: str,
        intent: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        relationship_type: Optional[str] = None,
        depth: int = DEFAULT_DEPTH,
        limit: int = DEFAULT_LIMIT,
        where: Optional[dict] = None,
    ) -> dict[str, Any]:
        """
        Answer *query*.

        Parameters
        ----------
        query:
            Natural-language query.
        intent:
            Force ``"semantic"``, ``"structural"`` or ``"hybrid"``;
            None or ``"auto"`` classifies the query.
        entity_id:
            Known entity to traverse from (structural handling).
        entity_type:
            Entity type filter for the structural name search.
        relationship_type:
            Edge type followed by the traversal; None follows every type.
        depth:
            Traversal depth.
        limit:
            Number of semantic results.
        where:
            Metadata equality filter for the semantic search.

        Returns
        -------
        dict
            ``{"type", "results", "query"}``; hybrid results also carry the
            raw ``semantic`` and ``structural`` envelopes.
        """
        if intent in (None, "auto"):
            intent = self.classifier.classify(query)
        elif intent not in Intent.ALL:
            raise ValueError(f"Unknown intent: {intent}")
        logger.debug("Query intent: %s", intent)

        t0 = time.perf_counter()
        if intent == Intent.STRUCTURAL:
            envelope = await self.handle_structural(
                query, entity_id=entity_id, entity_type=entity_type,
                relationship_type=relationship_type, depth=depth,
            )
        elif intent == Intent.HYBRID:
            envelope = await self.handle_hybrid(query, limit=limit, where=where)
        else:
            envelope = await self.handle_semantic(query, limit=limit, where=where)
        elapsed = (time.perf_counter() - t0) * 1000
        logger.debug("%s query answered in %.1fms", intent, elapsed)
        return envelope

    async def handle_semantic(
        self,
        query: str,
        limit: int = DEFAULT_LIMIT,
        where: Optional[dict] = None,
    ) -> dict[str, Any]:
        raw = await self._vector_store.query(query, limit, where)
        return {
            "type": Intent.SEMANTIC,
            "results": {
                "documents": raw["documents"],
                "metadatas": raw["metadatas"],
                "ids": raw["ids"],
                "scores": [1.0 - d for d in raw["distances"]],
            },
            "query": query,
        }

    async def handle_structural(
        self,
        query: str,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        relationship_type: Optional[str] = None,
        depth: int = DEFAULT_DEPTH,
    ) -> dict[str, Any]:
        if entity_id:
            relationships = await self._graph.traverse(entity_id, relationship_type, depth)
            return {"type": Intent.STRUCTURAL, "results": relationships, "query": query}

        entities = await self._find_entities(query, entity_type)
        results = []
        for entity in entities[:STRUCTURAL_TOP_K]:
            results.append({
                "entity": entity,
                "relationships": await self._graph.find_relationships(entity.entity_id),
            })
        return {"type": Intent.STRUCTURAL, "results": results, "query": query}

    async def handle_hybrid(
        self,
        query: str,
        limit: int = DEFAULT_LIMIT,
        where: Optional[dict] = None,
    ) -> dict[str, Any]:
        semantic, structural = await asyncio.gather(
            self.handle_semantic(query, limit=limit, where=where),
            self.handle_structural(query),
        )
        return {
            "type": Intent.HYBRID,
            "results": fuse_results(semantic["results"], structural["results"]),
            "query": query,
            "semantic": semantic,
            "structural": structural,
        }

    async def _find_entities(self, query: str, entity_type: Optional[str]) -> list["Entity"]:
        """Name search on the whole query, then on terms extracted from it."""
        entities = await self._graph.search_entities(query, entity_type)
        if entities:
            return entities

        found: list["Entity"] = []
        seen: set[str] = set()
        for term in extract_query_terms(query):
            for entity in await self._graph.search_entities(term, entity_type):
                if entity.entity_id in seen:
                    continue
                seen.add(entity.entity_id)
                found.append(entity)
            if len(found) >= STRUCTURAL_TOP_K:
                break
        return found

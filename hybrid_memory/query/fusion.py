"""
Fusion of semantic (vector) and structural (graph) result sets.
"""

from __future__ import annotations

from typing import Any

STRUCTURAL_DEFAULT_SCORE = 0.7
SHARED_KEY_BOOST = 0.2
DEFAULT_TOP_N = 10


def fuse_results(
    semantic: dict,
    structural: list[dict],
    top_n: int = DEFAULT_TOP_N,
) -> list[dict[str, Any]]:
    """
    Merge one semantic and one structural result set into a ranked list.

    Semantic hits are keyed by their ``file_path`` metadata (``doc_<i>``
    when absent).  A structural hit whose ``entity_id`` matches an existing
    key has its relationships attached and the score raised by 0.2, capped
    at 1.0; any other structural hit enters with a score of 0.7.

    Parameters
    ----------
    semantic:
        ``{"documents", "metadatas", "scores"}`` from the semantic handler.
    structural:
        List of ``{"entity", "relationships"}`` from the structural handler.
    top_n:
        Maximum number of fused results.

    Returns
    -------
    list[dict]
        Items with ``source``, ``type``, ``content``, ``metadata``, ``score``
        and optionally ``relationships``, sorted by score descending.
    """
    merged: dict[str, dict[str, Any]] = {}

    documents = semantic.get("documents") or []
    metadatas = semantic.get("metadatas") or []
    scores = semantic.get("scores") or []
    for idx, doc in enumerate(documents):
        metadata = metadatas[idx] if idx < len(metadatas) else {}
        key = (metadata or {}).get("file_path") or f"doc_{idx}"
        merged[key] = {
            "source": "vector",
            "type": "semantic",
            "content": doc,
            "metadata": metadata,
            "score": scores[idx] if idx < len(scores) else 0.0,
        }

    for hit in structural or []:
        entity = hit.get("entity") if isinstance(hit, dict) else None
        if entity is None:
            continue
        relationships = hit.get("relationships", [])
        existing = merged.get(entity.entity_id)
        if existing is not None:
            existing["relationships"] = relationships
            existing["score"] = min(1.0, existing["score"] + SHARED_KEY_BOOST)
        else:
            merged[entity.entity_id] = {
                "source": "graph",
                "type": "structural",
                "content": entity.name,
                "metadata": entity.properties,
                "relationships": relationships,
                "score": STRUCTURAL_DEFAULT_SCORE,
            }

    ranked = sorted(merged.values(), key=lambda item: item["score"], reverse=True)
    return ranked[:top_n]

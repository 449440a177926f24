"""
In-process vector index with a JSON snapshot on disk.

Records are kept as four parallel lists (``documents``, ``embeddings``,
``metadatas``, ``ids``).  Queries are exact brute-force cosine similarity
computed with numpy, O(n·d), sized for a single-user memory store.

Storage: ``{persist_dir}/memory_store.json``
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from typing import Any, Optional

import numpy as np

from .embedder import EmbeddingService

logger = logging.getLogger(__name__)

SNAPSHOT_FILENAME = "memory_store.json"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


def _matches(metadata: dict, where: Optional[dict]) -> bool:
    """Equality filter over metadata keys."""
    if not where:
        return True
    return all(metadata.get(key) == value for key, value in where.items())


def _empty_result() -> dict:
    return {"documents": [], "metadatas": [], "distances": [], "ids": []}


# ---------------------------------------------------------------------------
# VectorStore
# ---------------------------------------------------------------------------

class VectorStore:
    """Local vector index backed by parallel lists + numpy cosine similarity.

    Parameters
    ----------
    embeddings:
        Service used to embed documents and queries.
    persist_dir:
        Directory holding the JSON snapshot.  None keeps everything in memory.
    """

    def __init__(
        self,
        embeddings: EmbeddingService,
        persist_dir: Optional[str] = None,
    ) -> None:
        self._embeddings = embeddings
        self._persist_dir = persist_dir
        self._documents: list[str] = []
        self._vectors: list[list[float]] = []
        self._metadatas: list[dict] = []
        self._ids: list[str] = []
        self._save_lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._initialized = False

    @property
    def snapshot_path(self) -> Optional[str]:
        if self._persist_dir is None:
            return None
        return os.path.join(self._persist_dir, SNAPSHOT_FILENAME)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the snapshot, if any.  Safe to call repeatedly."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._load_snapshot()
            self._initialized = True

    async def _load_snapshot(self) -> None:
        path = self.snapshot_path
        if path is None:
            return
        await asyncio.to_thread(os.makedirs, self._persist_dir, exist_ok=True)
        if not os.path.exists(path):
            return
        try:
            data = await asyncio.to_thread(self._read_snapshot, path)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read vector snapshot %s: %s; starting empty", path, exc)
            return

        documents = data.get("documents") or []
        vectors = data.get("embeddings") or []
        metadatas = data.get("metadatas") or []
        ids = data.get("ids") or []
        if not (len(documents) == len(vectors) == len(metadatas) == len(ids)):
            logger.warning("Vector snapshot %s has misaligned arrays; starting empty", path)
            return
        self._documents = list(documents)
        self._vectors = [list(v) for v in vectors]
        self._metadatas = [dict(m or {}) for m in metadatas]
        self._ids = list(ids)
        logger.debug("Loaded %d vector records from %s", len(self._ids), path)

    @staticmethod
    def _read_snapshot(path: str) -> dict:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError("snapshot is not a JSON object")
        return data

    async def save(self) -> None:
        """Overwrite the snapshot with the whole table (temp file + rename)."""
        path = self.snapshot_path
        if path is None:
            return
        payload = json.dumps(
            {
                "documents": self._documents,
                "embeddings": self._vectors,
                "metadatas": self._metadatas,
                "ids": self._ids,
            },
            ensure_ascii=False,
            default=str,
        )
        async with self._save_lock:
            await asyncio.to_thread(self._write_snapshot, path, payload)

    @staticmethod
    def _write_snapshot(path: str, payload: str) -> None:
        directory = os.path.dirname(path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".memory_store.", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def add(
        self,
        documents: list[str],
        metadatas: Optional[list[dict]] = None,
        ids: Optional[list[str]] = None,
    ) -> list[str]:
        """Embed and insert *documents*.

        Parameters
        ----------
        documents:
            Texts to store.
        metadatas:
            One map per document; missing entries get ``{"timestamp": now}``.
        ids:
            One id per document; generated when omitted.  An id that already
            exists replaces the stored record.

        Returns
        -------
        list[str]
            The ids of the inserted records.
        """
        await self.initialize()
        if not documents:
            return []

        if not ids:
            stamp = int(time.time() * 1000)
            ids = [f"doc_{stamp}_{i}" for i in range(len(documents))]
        elif len(ids) != len(documents):
            raise ValueError("ids and documents must have the same length")

        metadatas = list(metadatas or [])
        while len(metadatas) < len(documents):
            metadatas.append({"timestamp": datetime.now(timezone.utc).isoformat()})

        vectors = await asyncio.gather(
            *(self._embeddings.generate_embedding(doc) for doc in documents)
        )

        for doc_id, doc, vector, metadata in zip(ids, documents, vectors, metadatas):
            self._put(doc_id, doc, vector, dict(metadata))

        await self.save()
        logger.debug("[VectorStore] Added %d documents", len(documents))
        return list(ids)

    async def query(
        self,
        query_text: str,
        n_results: int = 5,
        where: Optional[dict] = None,
    ) -> dict:
        """Return the *n_results* records closest to *query_text*.

        Returns
        -------
        dict
            ``documents``, ``metadatas``, ``distances`` and ``ids`` lists,
            ordered by ascending distance (``1 - cosine_similarity``).
        """
        await self.initialize()
        candidates = [
            i for i, metadata in enumerate(self._metadatas) if _matches(metadata, where)
        ]
        if not candidates or n_results <= 0:
            return _empty_result()

        query_vec = np.asarray(
            await self._embeddings.generate_embedding(query_text), dtype=np.float64
        )

        scores = np.zeros(len(candidates))
        same_dim = [
            pos for pos, i in enumerate(candidates)
            if len(self._vectors[i]) == query_vec.shape[0]
        ]
        if same_dim:
            matrix = np.array(
                [self._vectors[candidates[pos]] for pos in same_dim], dtype=np.float64
            )
            scores[same_dim] = _cosine_similarity_batch(query_vec, matrix)

        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:n_results]
        result = _empty_result()
        for pos in order:
            idx = candidates[pos]
            result["documents"].append(self._documents[idx])
            result["metadatas"].append(self._metadatas[idx])
            result["distances"].append(1.0 - float(scores[pos]))
            result["ids"].append(self._ids[idx])
        return result

    async def update(self, doc_id: str, document: str, metadata: dict) -> bool:
        """Re-embed and replace *doc_id*.  Returns False if the id is unknown."""
        await self.initialize()
        if doc_id not in self._ids:
            logger.debug("[VectorStore] update: unknown id %s", doc_id)
            return False
        vector = await self._embeddings.generate_embedding(document)
        self._put(doc_id, document, vector, dict(metadata))
        await self.save()
        return True

    async def delete(self, ids: list[str]) -> int:
        """Remove the given ids.  Unknown ids are ignored.  Returns the count removed."""
        await self.initialize()
        removed = 0
        for doc_id in ids:
            if doc_id not in self._ids:
                continue
            idx = self._ids.index(doc_id)
            del self._documents[idx]
            del self._vectors[idx]
            del self._metadatas[idx]
            del self._ids[idx]
            removed += 1
        if removed:
            await self.save()
        return removed

    def get(self, doc_id: str) -> Optional[dict[str, Any]]:
        """Return ``{id, document, metadata, embedding}`` for *doc_id*, or None."""
        if doc_id not in self._ids:
            return None
        idx = self._ids.index(doc_id)
        return {
            "id": doc_id,
            "document": self._documents[idx],
            "metadata": self._metadatas[idx],
            "embedding": self._vectors[idx],
        }

    def count(self) -> int:
        return len(self._ids)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _put(self, doc_id: str, document: str, vector: list[float], metadata: dict) -> None:
        """Insert or replace one record, keeping the four lists aligned."""
        if doc_id in self._ids:
            idx = self._ids.index(doc_id)
            self._documents[idx] = document
            self._vectors[idx] = list(vector)
            self._metadatas[idx] = metadata
            return
        self._documents.append(document)
        self._vectors.append(list(vector))
        self._metadatas.append(metadata)
        self._ids.append(doc_id)

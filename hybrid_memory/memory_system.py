"""
HybridMemorySystem: dual-write ingestion into the vector index and the
entity graph, plus the query, maintenance and import/export entry points.

Typical use::

    from hybrid_memory import create_memory_system

    async with create_memory_system() as memory:
        memory_id = await memory.store(source, {"type": "code", "file_path": "a.js"})
        result = await memory.query("who calls processData")
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import Config
from .errors import MemoryImportError, PartialIngestError
from .kb.embedder import create_embedding_service
from .kb.extractor import Extractor, LexicalExtractor, file_entity_id
from .kb.graph import Entity, EntityType, GraphStore, Relationship, RelationType
from .kb.vector_store import VectorStore
from .project_scanner import normalize_extensions, scan_directory
from .query.router import QueryRouter

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
CONTENT_PREVIEW_CHARS = 200
DEFAULT_MEMORY_TITLE = "Code Memory"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_memory_id() -> str:
    """Return ``memory_<epoch-ms>_<9 random base-36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"memory_{int(time.time() * 1000)}_{suffix}"


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


def _write_json(path: str, data: dict) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Export file validation
# ---------------------------------------------------------------------------

def _require_str(record: dict, key: str, kind: str, idx: int, allow_empty: bool = False) -> str:
    value = record.get(key)
    if not isinstance(value, str):
        raise MemoryImportError(f"{kind} #{idx}: '{key}' must be a string")
    if not value and not allow_empty:
        raise MemoryImportError(f"{kind} #{idx}: '{key}' must be a non-empty string")
    return value


def _properties_of(record: dict, kind: str, idx: int) -> dict:
    props = record.get("properties")
    if props is None:
        return {}
    if not isinstance(props, dict):
        raise MemoryImportError(f"{kind} #{idx}: 'properties' must be an object")
    return props


def _parse_export(data: Any) -> tuple[list[Entity], list[Relationship]]:
    """Validate an export document and turn it into graph records."""
    if not isinstance(data, dict):
        raise MemoryImportError("Export file must contain a JSON object")
    raw_entities = data.get("entities")
    raw_relationships = data.get("relationships")
    if not isinstance(raw_entities, list) or not isinstance(raw_relationships, list):
        raise MemoryImportError("Export file needs 'entities' and 'relationships' lists")

    entities: list[Entity] = []
    for idx, record in enumerate(raw_entities):
        if not isinstance(record, dict):
            raise MemoryImportError(f"entity #{idx} is not an object")
        entities.append(Entity(
            entity_id=_require_str(record, "entity_id", "entity", idx),
            type=_require_str(record, "type", "entity", idx),
            name=_require_str(record, "name", "entity", idx, allow_empty=True),
            properties=_properties_of(record, "entity", idx),
            created_at=record.get("created_at"),
        ))

    relationships: list[Relationship] = []
    for idx, record in enumerate(raw_relationships):
        if not isinstance(record, dict):
            raise MemoryImportError(f"relationship #{idx} is not an object")
        relationships.append(Relationship(
            from_id=_require_str(record, "from_id", "relationship", idx),
            to_id=_require_str(record, "to_id", "relationship", idx),
            type=_require_str(record, "type", "relationship", idx),
            properties=_properties_of(record, "relationship", idx),
            created_at=record.get("created_at"),
        ))
    return entities, relationships


# ---------------------------------------------------------------------------
# HybridMemorySystem
# ---------------------------------------------------------------------------

class HybridMemorySystem:
    """
    Coordinates the vector index and the entity graph.

    Parameters
    ----------
    vector_store:
        Semantic index; every memory is written here.
    graph:
        Entity graph; code memories with a file path are also written here.
    extractor:
        Structure extractor for ``type == "code"`` memories.
    router:
        Query router; built from the two stores when omitted.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        graph: GraphStore,
        extractor: Optional[Extractor] = None,
        router: Optional[QueryRouter] = None,
    ) -> None:
        self.vector_store = vector_store
        self.graph = graph
        self.extractor = extractor or LexicalExtractor()
        self.router = router or QueryRouter(vector_store, graph)
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the vector snapshot and open the graph.  Safe to call repeatedly."""
        if self._initialized:
            return
        await self.vector_store.initialize()
        await self.graph.initialize()
        self._initialized = True

    async def close(self) -> None:
        await self.graph.close()
        self._initialized = False

    async def __aenter__(self) -> "HybridMemorySystem":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def store(self, content: str, metadata: Optional[dict] = None) -> str:
        """
        Store *content* as a new memory and return its id.

        The memory always goes to the vector index.  When it has a
        ``file_path``, File and Memory entities linked by ``HAS_MEMORY`` are
        written to the graph; ``code`` memories additionally get their
        functions, classes and imports extracted.

        Raises
        ------
        PartialIngestError
            The vector write succeeded but a graph write failed.  Nothing is
            rolled back.
        """
        await self.initialize()
        metadata = dict(metadata or {})
        memory_id = new_memory_id()

        await self.vector_store.add(
            [content],
            [{**metadata, "memory_id": memory_id, "created_at": _now()}],
            [memory_id],
        )

        # A code memory without a path has no File entity to hang structure on
        if metadata.get("file_path"):
            try:
                await self._store_structure(memory_id, content, metadata)
            except Exception as exc:
                logger.exception("Graph write failed for memory %s", memory_id)
                raise PartialIngestError(memory_id, exc) from exc

        logger.debug("Stored memory %s (type=%s)", memory_id, metadata.get("type"))
        return memory_id

    async def _store_structure(self, memory_id: str, content: str, metadata: dict) -> None:
        file_path = metadata["file_path"]
        file_id = file_entity_id(file_path)

        await self.graph.create_entity(
            file_id, EntityType.FILE, os.path.basename(file_path.rstrip("/\\")) or file_path,
            {
                "path": file_path,
                "extension": os.path.splitext(file_path)[1],
                "memory_id": memory_id,
            },
        )
        await self.graph.create_entity(
            memory_id, EntityType.MEMORY, metadata.get("title") or DEFAULT_MEMORY_TITLE,
            {"content_preview": content[:CONTENT_PREVIEW_CHARS], **metadata},
        )
        await self.graph.create_relationship(
            file_id, memory_id, RelationType.HAS_MEMORY, {"created_at": _now()},
        )

        if metadata.get("type") != "code":
            return
        extracted = self.extractor.extract(file_id, content, file_path)
        for entity in extracted.entities:
            await self.graph.create_entity(
                entity.entity_id, entity.type, entity.name, entity.properties,
            )
        for rel in extracted.relationships:
            await self.graph.create_relationship(rel.from_id, rel.to_id, rel.type, rel.properties)
        logger.debug("Extracted %d entities from %s", len(extracted.entities), file_path)

    async def add_file(
        self,
        path: str,
        title: Optional[str] = None,
        project: Optional[str] = None,
    ) -> str:
        """Read *path* and store it as a ``code`` memory keyed by its absolute path."""
        abs_path = os.path.abspath(path)
        content = await asyncio.to_thread(_read_text, abs_path)
        metadata = {
            "type": "code",
            "file_path": abs_path,
            "title": title or os.path.basename(abs_path),
        }
        if project:
            metadata["project"] = project
        return await self.store(content, metadata)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def update(
        self,
        memory_id: str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> str:
        """Re-embed *memory_id* with new content and refresh its Memory entity."""
        await self.initialize()
        metadata = dict(metadata or {})

        await self.vector_store.update(memory_id, content, {**metadata, "updated_at": _now()})

        entity = await self.graph.find_entity(memory_id)
        if entity is not None:
            await self.graph.create_entity(
                memory_id,
                entity.type,
                metadata.get("title") or entity.name,
                {
                    **entity.properties,
                    **metadata,
                    "content_preview": content[:CONTENT_PREVIEW_CHARS],
                },
            )
        return memory_id

    async def delete(self, memory_id: str) -> None:
        """Remove the vector record and the Memory entity.  Derived entities stay."""
        await self.initialize()
        await self.vector_store.delete([memory_id])
        await self.graph.delete_entity(memory_id)

    # ------------------------------------------------------------------
    # Query / stats
    # ------------------------------------------------------------------

    async def query(self, text: str, **options) -> dict:
        """Route *text*; see :meth:`QueryRouter.route` for *options*."""
        await self.initialize()
        return await self.router.route(text, **options)

    async def get_stats(self) -> dict:
        await self.initialize()
        return {
            "graph": await self.graph.get_stats(),
            "vector": {"documents": self.vector_store.count(), "status": "active"},
        }

    # ------------------------------------------------------------------
    # Project import
    # ------------------------------------------------------------------

    async def import_project(
        self,
        path: str,
        extensions=None,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> dict:
        """
        Store every matching source file under *path* as a code memory.

        Parameters
        ----------
        path:
            Project root directory.
        extensions:
            Extensions to include (list or comma-separated string); defaults
            to ``.js .ts .jsx .tsx .py .java``.
        progress_callback:
            Optional callable called with (current, total, filename) for each
            processed file.

        Returns
        -------
        dict
            ``project`` (entity id), ``files`` (matched), ``stored`` and
            ``failed`` counts.
        """
        await self.initialize()
        root = os.path.abspath(path)
        if not os.path.isdir(root):
            raise NotADirectoryError(f"Not a directory: {root}")

        project_name = os.path.basename(root)
        project_id = f"project:{project_name}"
        await self.graph.create_entity(
            project_id, EntityType.PROJECT, project_name, {"path": root},
        )

        files = await asyncio.to_thread(scan_directory, root, normalize_extensions(extensions))
        total = len(files)
        stored = failed = 0

        for idx, file_path in enumerate(files):
            rel_path = os.path.relpath(file_path, root)
            if progress_callback:
                progress_callback(idx + 1, total, rel_path)
            try:
                content = await asyncio.to_thread(_read_text, file_path)
                await self.store(content, {
                    "file_path": file_path,
                    "relative_path": rel_path,
                    "project": project_name,
                    "type": "code",
                })
                await self.graph.create_relationship(
                    project_id, file_entity_id(file_path), RelationType.CONTAINS_FILE,
                )
                stored += 1
            except Exception as exc:
                logger.warning("Skipping %s: %s", rel_path, exc)
                failed += 1

        logger.info("Imported project %s: %d/%d files stored, %d failed",
                    project_name, stored, total, failed)
        return {"project": project_id, "files": total, "stored": stored, "failed": failed}

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_to(self, path: str) -> dict:
        """Write every entity and relationship to *path* as JSON and return the document."""
        await self.initialize()
        data = {
            "version": EXPORT_VERSION,
            "exported_at": _now(),
            "stats": await self.graph.get_stats(),
            "entities": [e.to_dict() for e in await self.graph.all_entities()],
            "relationships": [r.to_dict() for r in await self.graph.all_relationships()],
        }
        await asyncio.to_thread(_write_json, path, data)
        logger.info("Exported %d entities and %d relationships to %s",
                    len(data["entities"]), len(data["relationships"]), path)
        return data

    async def import_from(self, path: str) -> dict:
        """
        Load an export file into the graph in one transaction.

        Raises
        ------
        MemoryImportError
            The file is unreadable or malformed, or the batch failed.  The
            graph is unchanged in every case.
        """
        await self.initialize()
        try:
            raw = await asyncio.to_thread(_read_text, path)
            data = json.loads(raw)
        except (OSError, ValueError) as exc:
            raise MemoryImportError(f"Cannot read export file {path}: {exc}") from exc

        entities, relationships = _parse_export(data)
        await self.graph.batch_import(entities, relationships)
        return {"imported": {"entities": len(entities), "relationships": len(relationships)}}


def create_memory_system(config: Optional[Config] = None) -> HybridMemorySystem:
    """Build a :class:`HybridMemorySystem` from *config* (loaded when omitted)."""
    config = config or Config.load()
    embeddings = create_embedding_service(config)
    vector_store = VectorStore(embeddings, config.VECTOR_PERSIST_DIR)
    graph = GraphStore(config.SQLITE_DB_PATH, max_edges=config.TRAVERSAL_MAX_EDGES)
    return HybridMemorySystem(vector_store, graph)

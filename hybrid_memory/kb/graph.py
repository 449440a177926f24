"""
SQLite-backed entity/relationship graph for the hybrid memory engine.

Entities are typed, named nodes with a JSON property bag; relationships are
typed, directed edges unique on ``(from_id, to_id, type)``.  Referential
integrity is advisory: relationships may point at entities that no longer
exist and are still returned by relationship queries.

All statements go through a single ``aiosqlite`` connection opened in
autocommit mode; :meth:`GraphStore.batch_import` is the only explicit
transaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import aiosqlite

from ..errors import MemoryImportError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Entity / relationship type constants
# ---------------------------------------------------------------------------

class EntityType:
    FILE = "File"
    MEMORY = "Memory"
    FUNCTION = "Function"
    CLASS = "Class"
    IMPORT = "Import"
    PROJECT = "Project"


class RelationType:
    HAS_MEMORY = "HAS_MEMORY"
    CONTAINS = "CONTAINS"
    IMPORTS = "IMPORTS"
    CONTAINS_FILE = "CONTAINS_FILE"


PropertyValue = Union[str, int, float, bool, None, list, dict]
Properties = dict[str, PropertyValue]

DEFAULT_MAX_EDGES = 10_000

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id   TEXT UNIQUE NOT NULL,
    type        TEXT NOT NULL,
    name        TEXT NOT NULL,
    properties  TEXT,
    created_at  DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at  DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS relationships (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    from_id     TEXT NOT NULL,
    to_id       TEXT NOT NULL,
    type        TEXT NOT NULL,
    properties  TEXT,
    created_at  DATETIME DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (from_id) REFERENCES entities(entity_id),
    FOREIGN KEY (to_id) REFERENCES entities(entity_id),
    UNIQUE(from_id, to_id, type)
);

CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type);
CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);
CREATE INDEX IF NOT EXISTS idx_relationships_type ON relationships(type);
CREATE INDEX IF NOT EXISTS idx_relationships_from ON relationships(from_id);
CREATE INDEX IF NOT EXISTS idx_relationships_to ON relationships(to_id);
"""

_UPSERT_ENTITY = """
INSERT INTO entities (entity_id, type, name, properties, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(entity_id) DO UPDATE SET
    type       = excluded.type,
    name       = excluded.name,
    properties = excluded.properties,
    updated_at = excluded.updated_at
"""

_UPSERT_RELATIONSHIP = """
INSERT INTO relationships (from_id, to_id, type, properties, created_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(from_id, to_id, type) DO UPDATE SET
    properties = excluded.properties
"""

_SELECT_RELATIONSHIPS = """
SELECT r.from_id, r.to_id, r.type, r.properties, r.created_at,
       e1.type AS from_type, e1.name AS from_name, e1.properties AS from_properties,
       e2.type AS to_type, e2.name AS to_name, e2.properties AS to_properties
FROM relationships r
LEFT JOIN entities e1 ON r.from_id = e1.entity_id
LEFT JOIN entities e2 ON r.to_id = e2.entity_id
"""

_ENTITY_COLUMNS = "entity_id, type, name, properties, created_at, updated_at"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

def _decode(raw: Optional[str]) -> Properties:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return value if isinstance(value, dict) else {}


def _encode(properties: Optional[Properties]) -> str:
    return json.dumps(properties or {}, ensure_ascii=False, default=str)


@dataclass
class Entity:
    """A typed, named node in the graph."""

    entity_id: str
    type: str
    name: str
    properties: Properties = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Entity":
        return cls(
            entity_id=row["entity_id"],
            type=row["type"],
            name=row["name"],
            properties=_decode(row["properties"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Relationship:
    """A typed, directed edge, enriched with both endpoints when they exist."""

    from_id: str
    to_id: str
    type: str
    properties: Properties = field(default_factory=dict)
    created_at: Optional[str] = None
    from_type: Optional[str] = None
    from_name: Optional[str] = None
    from_properties: Properties = field(default_factory=dict)
    to_type: Optional[str] = None
    to_name: Optional[str] = None
    to_properties: Properties = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "Relationship":
        return cls(
            from_id=row["from_id"],
            to_id=row["to_id"],
            type=row["type"],
            properties=_decode(row["properties"]),
            created_at=row["created_at"],
            from_type=row["from_type"],
            from_name=row["from_name"],
            from_properties=_decode(row["from_properties"]),
            to_type=row["to_type"],
            to_name=row["to_name"],
            to_properties=_decode(row["to_properties"]),
        )

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_id, self.to_id, self.type)

    def other_end(self, entity_id: str) -> str:
        """Return the endpoint opposite *entity_id*."""
        return self.to_id if self.from_id == entity_id else self.from_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# GraphStore
# ---------------------------------------------------------------------------

class GraphStore:
    """
    Entity/relationship graph persisted in SQLite.

    Parameters
    ----------
    db_path:
        SQLite database file, or ``":memory:"``.
    max_edges:
        Default upper bound on the number of edges a traversal may return.
    """

    def __init__(self, db_path: str, max_edges: int = DEFAULT_MAX_EDGES) -> None:
        self._db_path = db_path
        self._max_edges = max_edges
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._last_ts: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the connection and create tables.  Safe to call repeatedly."""
        if self._conn is not None:
            return
        async with self._init_lock:
            if self._conn is not None:
                return
            if self._db_path != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
            conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.executescript(_SCHEMA)
            self._conn = conn
            logger.debug("Opened graph store at %s", self._db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _db(self) -> aiosqlite.Connection:
        await self.initialize()
        assert self._conn is not None
        return self._conn

    def _timestamp(self) -> str:
        """ISO-8601 UTC timestamp, strictly increasing for this store."""
        now = datetime.now(timezone.utc)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now.isoformat(timespec="microseconds")

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def create_entity(
        self,
        entity_id: str,
        type: str,
        name: str,
        properties: Optional[Properties] = None,
    ) -> Entity:
        """Insert or replace the entity keyed by *entity_id*.

        A repeat call replaces type, name and properties, keeps
        ``created_at`` and moves ``updated_at`` forward.
        """
        conn = await self._db()
        now = self._timestamp()
        async with self._write_lock:
            await conn.execute(
                _UPSERT_ENTITY,
                (entity_id, type, name, _encode(properties), now, now),
            )
        return Entity(entity_id, type, name, dict(properties or {}), updated_at=now)

    async def find_entity(self, entity_id: str) -> Optional[Entity]:
        conn = await self._db()
        async with conn.execute(
            f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE entity_id = ?", (entity_id,)
        ) as cur:
            row = await cur.fetchone()
        return Entity.from_row(row) if row else None

    async def find_entities_by_type(self, type: str) -> list[Entity]:
        conn = await self._db()
        async with conn.execute(
            f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE type = ? ORDER BY id", (type,)
        ) as cur:
            rows = await cur.fetchall()
        return [Entity.from_row(r) for r in rows]

    async def search_entities(
        self,
        query: str,
        type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Entity]:
        """
        Substring match on entity names (case-insensitive for ASCII).

        Parameters
        ----------
        query:
            Substring to look for.  ``%`` and ``_`` are matched literally.
        type:
            Optional entity type filter.
        limit:
            Maximum number of entities to return.
        """
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        sql = f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE name LIKE ? ESCAPE '\\'"
        params: list[Any] = [f"%{escaped}%"]
        if type:
            sql += " AND type = ?"
            params.append(type)
        sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        conn = await self._db()
        async with conn.execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [Entity.from_row(r) for r in rows]

    async def delete_entity(self, entity_id: str) -> bool:
        """Delete only the entity row; relationships that reference it remain."""
        conn = await self._db()
        async with self._write_lock:
            cur = await conn.execute("DELETE FROM entities WHERE entity_id = ?", (entity_id,))
            deleted = cur.rowcount > 0
            await cur.close()
        return deleted

    async def all_entities(self) -> list[Entity]:
        conn = await self._db()
        async with conn.execute(f"SELECT {_ENTITY_COLUMNS} FROM entities ORDER BY id") as cur:
            rows = await cur.fetchall()
        return [Entity.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def create_relationship(
        self,
        from_id: str,
        to_id: str,
        type: str,
        properties: Optional[Properties] = None,
    ) -> Relationship:
        """Insert the edge, or replace its properties if the triple already exists."""
        conn = await self._db()
        now = self._timestamp()
        async with self._write_lock:
            await conn.execute(
                _UPSERT_RELATIONSHIP,
                (from_id, to_id, type, _encode(properties), now),
            )
        return Relationship(from_id, to_id, type, dict(properties or {}), created_at=now)

    async def find_relationships(self, entity_id: str) -> list[Relationship]:
        """Return every relationship where *entity_id* is either endpoint."""
        conn = await self._db()
        async with conn.execute(
            _SELECT_RELATIONSHIPS + " WHERE r.from_id = ? OR r.to_id = ? ORDER BY r.id",
            (entity_id, entity_id),
        ) as cur:
            rows = await cur.fetchall()
        return [Relationship.from_row(r) for r in rows]

    async def all_relationships(self) -> list[Relationship]:
        conn = await self._db()
        async with conn.execute(_SELECT_RELATIONSHIPS + " ORDER BY r.id") as cur:
            rows = await cur.fetchall()
        return [Relationship.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def traverse(
        self,
        start_id: str,
        relationship_type: Optional[str] = None,
        max_depth: int = 1,
        max_edges: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[Relationship]:
        """
        Depth-first walk from *start_id* over edges of *relationship_type*.

        Edges are followed in both directions.  A node is expanded at most
        once and only while its depth is at most *max_depth*; each edge is
        reported once, in the order it was first discovered.

        Parameters
        ----------
        start_id:
            Entity to start from.
        relationship_type:
            Edge type to follow, or None for every type.
        max_depth:
            Number of hops to expand.
        max_edges:
            Stop after collecting this many edges (defaults to the store's
            ``max_edges``).
        timeout:
            Optional wall-clock limit in seconds.

        Returns
        -------
        list[Relationship]
            Edges in first-discovered, depth-first order.
        """
        edge_limit = self._max_edges if max_edges is None else max_edges
        deadline = time.monotonic() + timeout if timeout is not None else None
        visited: set[str] = set()
        seen_edges: set[tuple[str, str, str]] = set()
        result: list[Relationship] = []

        async def _expand(node_id: str, depth: int):
            if depth > max_depth or node_id in visited:
                return None
            visited.add(node_id)
            rels = await self.find_relationships(node_id)
            if relationship_type is not None:
                rels = [r for r in rels if r.type == relationship_type]
            return iter(rels)

        # Each frame: (node_id, depth, iterator over that node's edges)
        stack: list[tuple[str, int, Any]] = []
        edges = await _expand(start_id, 0)
        if edges is not None:
            stack.append((start_id, 0, edges))

        while stack:
            if len(result) >= edge_limit:
                logger.warning("Traversal from %s stopped at edge limit %d", start_id, edge_limit)
                break
            if deadline is not None and time.monotonic() > deadline:
                logger.warning("Traversal from %s stopped after %.1fs timeout", start_id, timeout)
                break

            node_id, depth, edges = stack[-1]
            rel = next(edges, None)
            if rel is None:
                stack.pop()
                continue

            if rel.key not in seen_edges:
                seen_edges.add(rel.key)
                result.append(rel)

            next_id = rel.other_end(node_id)
            child = await _expand(next_id, depth + 1)
            if child is not None:
                stack.append((next_id, depth + 1, child))

        return result

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict:
        """
        Return aggregate statistics about the graph.

        Returns
        -------
        dict
            Keys: entity_count, relationship_count, by_entity_type (dict),
            by_relationship_type (dict).
        """
        conn = await self._db()
        async with conn.execute("SELECT COUNT(*) FROM entities") as cur:
            entity_count = (await cur.fetchone())[0]
        async with conn.execute("SELECT COUNT(*) FROM relationships") as cur:
            relationship_count = (await cur.fetchone())[0]
        async with conn.execute(
            "SELECT type, COUNT(*) AS count FROM entities GROUP BY type ORDER BY type"
        ) as cur:
            by_entity = {row["type"]: row["count"] for row in await cur.fetchall()}
        async with conn.execute(
            "SELECT type, COUNT(*) AS count FROM relationships GROUP BY type ORDER BY type"
        ) as cur:
            by_rel = {row["type"]: row["count"] for row in await cur.fetchall()}
        return {
            "entity_count": entity_count,
            "relationship_count": relationship_count,
            "by_entity_type": by_entity,
            "by_relationship_type": by_rel,
        }

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def batch_import(
        self,
        entities: list[Entity],
        relationships: list[Relationship],
    ) -> None:
        """
        Upsert all *entities*, then all *relationships*, in one transaction.

        Raises
        ------
        MemoryImportError
            If any statement fails; the transaction is rolled back and the
            store is left unchanged.
        """
        conn = await self._db()
        async with self._write_lock:
            await conn.execute("BEGIN")
            try:
                for entity in entities:
                    now = self._timestamp()
                    await conn.execute(
                        _UPSERT_ENTITY,
                        (
                            entity.entity_id, entity.type, entity.name,
                            _encode(entity.properties), entity.created_at or now, now,
                        ),
                    )
                for rel in relationships:
                    await conn.execute(
                        _UPSERT_RELATIONSHIP,
                        (
                            rel.from_id, rel.to_id, rel.type,
                            _encode(rel.properties), rel.created_at or self._timestamp(),
                        ),
                    )
                await conn.execute("COMMIT")
            except Exception as exc:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise MemoryImportError(f"Batch import failed: {exc}") from exc
        logger.info("Imported %d entities and %d relationships",
                    len(entities), len(relationships))

    async def clear(self) -> None:
        """Remove all entities and relationships."""
        conn = await self._db()
        async with self._write_lock:
            await conn.execute("DELETE FROM relationships")
            await conn.execute("DELETE FROM entities")

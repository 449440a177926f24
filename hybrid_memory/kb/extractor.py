"""
Lexical structure extraction for code memories.

Finds function-like declarations, class declarations and quoted import
paths with regular expressions and turns them into graph entities and
edges.  This is a heuristic pass, not a parser: it misses some valid
declarations and matches text inside strings and comments.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from .graph import EntityType, Properties, RelationType

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# `function f(`, `def f(`, `const f = (`, `let f = () =>`, `var f = x =>`...
_FUNCTION_RE = re.compile(
    r"(?:function|def|const|let|var)\s+(\w+)\s*(?:=\s*)?(?:\([^)]*\)|\s*=>)"
)
_CLASS_RE = re.compile(r"class\s+(\w+)")
# `import 'x'`, `import('x')`, `require("x")`, `from 'x'`
_IMPORT_RE = re.compile(r"(?:import|require|from)\s*\(?['\"]([^'\"]+)['\"]\)?")


# ---------------------------------------------------------------------------
# Node-ID helpers
# ---------------------------------------------------------------------------

def file_entity_id(path: str) -> str:
    return f"file:{path}"


def function_entity_id(file_id: str, name: str) -> str:
    return f"{file_id}:function:{name}"


def class_entity_id(file_id: str, name: str) -> str:
    return f"{file_id}:class:{name}"


def import_entity_id(module_path: str) -> str:
    return f"import:{module_path}"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ExtractedEntity:
    entity_id: str
    type: str
    name: str
    properties: Properties = field(default_factory=dict)


@dataclass
class ExtractedRelationship:
    from_id: str
    to_id: str
    type: str
    properties: Properties = field(default_factory=dict)


@dataclass
class ExtractionResult:
    """Entities and relationships found in one piece of text."""
    entities: list[ExtractedEntity] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)

    def add(self, entity: ExtractedEntity, rel: ExtractedRelationship) -> None:
        if any(e.entity_id == entity.entity_id for e in self.entities):
            return
        self.entities.append(entity)
        self.relationships.append(rel)


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

class Extractor(ABC):
    """Derives graph structure from the text of a code memory."""

    @abstractmethod
    def extract(
        self,
        file_id: str,
        content: str,
        file_path: Optional[str] = None,
    ) -> ExtractionResult:
        ...


class LexicalExtractor(Extractor):
    """Regex-based extractor: functions, classes and imports."""

    def extract(
        self,
        file_id: str,
        content: str,
        file_path: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Scan *content* and return the structure owned by *file_id*.

        Functions and classes are scoped under *file_id* and linked with
        ``CONTAINS``; imports are global (one entity per module path) and
        linked with ``IMPORTS``.  Repeated names collapse to one entity.

        Parameters
        ----------
        file_id:
            Entity id of the owning File.
        content:
            Source text.
        file_path:
            Path recorded in the ``file`` property of functions and classes.
        """
        result = ExtractionResult()

        for match in _FUNCTION_RE.finditer(content):
            name = match.group(1)
            result.add(
                ExtractedEntity(
                    function_entity_id(file_id, name), EntityType.FUNCTION, name,
                    {"file": file_path},
                ),
                ExtractedRelationship(file_id, function_entity_id(file_id, name),
                                      RelationType.CONTAINS),
            )

        for match in _CLASS_RE.finditer(content):
            name = match.group(1)
            result.add(
                ExtractedEntity(
                    class_entity_id(file_id, name), EntityType.CLASS, name,
                    {"file": file_path},
                ),
                ExtractedRelationship(file_id, class_entity_id(file_id, name),
                                      RelationType.CONTAINS),
            )

        for match in _IMPORT_RE.finditer(content):
            module_path = match.group(1)
            result.add(
                ExtractedEntity(
                    import_entity_id(module_path), EntityType.IMPORT, module_path,
                    {"type": "dependency"},
                ),
                ExtractedRelationship(file_id, import_entity_id(module_path),
                                      RelationType.IMPORTS),
            )

        return result

"""
Query intent classification: semantic, structural or hybrid.

The default strategy scores a query against per-category keyword and regex
tables.  Near-ties are treated as ambiguous and routed to both retrieval
paths.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional


class Intent:
    STRUCTURAL = "structural"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"

    ALL = (STRUCTURAL, SEMANTIC, HYBRID)


KEYWORD_SCORE = 2
PATTERN_SCORE = 3

# Category order matters: the first category with the top score wins.
_TABLES: dict[str, dict[str, list]] = {
    Intent.STRUCTURAL: {
        "keywords": [
            "依赖", "depends", "调用", "calls", "引用", "imports", "继承", "extends",
            "关系", "relationship", "连接", "connected",
        ],
        "patterns": [
            re.compile(r"谁(调用|依赖|引用|使用)了?"),
            re.compile(r"被(调用|依赖|引用|使用)的?"),
            re.compile(r"(函数|类|模块|文件).*的?(依赖|关系)"),
            re.compile(r"what (calls|depends on|imports|uses)", re.IGNORECASE),
            re.compile(r"show.*relationship", re.IGNORECASE),
        ],
    },
    Intent.SEMANTIC: {
        "keywords": [
            "如何", "how", "什么", "what", "为什么", "why", "解决", "solve",
            "错误", "error", "问题", "problem", "实现", "implement",
        ],
        "patterns": [
            re.compile(r"如何.*(实现|解决|处理)"),
            re.compile(r"什么是"),
            re.compile(r"(error|bug|issue|problem).*fix", re.IGNORECASE),
            re.compile(r"how (to|do)", re.IGNORECASE),
            re.compile(r"what (is|does)", re.IGNORECASE),
        ],
    },
    Intent.HYBRID: {
        "keywords": [
            "相关", "related", "关于", "about", "涉及", "involve", "包含", "contain",
        ],
        "patterns": [
            re.compile(r".*相关的?(代码|函数|文件)"),
            re.compile(r"关于.*的?(所有|全部)"),
            re.compile(r"find.*related", re.IGNORECASE),
            re.compile(r"all.*about", re.IGNORECASE),
        ],
    },
}


class IntentStrategy(ABC):
    """Scores a query per intent category."""

    @abstractmethod
    def score(self, query: str) -> dict[str, int]:
        ...


class KeywordPatternStrategy(IntentStrategy):
    """+2 per keyword found in the lower-cased query, +3 per regex match."""

    def __init__(self, tables: Optional[dict[str, dict[str, list]]] = None) -> None:
        self.tables = tables if tables is not None else _TABLES

    def score(self, query: str) -> dict[str, int]:
        lowered = query.lower()
        scores: dict[str, int] = {}
        for category, table in self.tables.items():
            total = 0
            for keyword in table.get("keywords", []):
                if keyword in lowered:
                    total += KEYWORD_SCORE
            for pattern in table.get("patterns", []):
                if pattern.search(query):
                    total += PATTERN_SCORE
            scores[category] = total
        return scores


class IntentClassifier:
    """
    Decides how a free-text query should be routed.

    Parameters
    ----------
    strategy:
        Scoring strategy; defaults to :class:`KeywordPatternStrategy`.
    """

    def __init__(self, strategy: Optional[IntentStrategy] = None) -> None:
        self.strategy = strategy or KeywordPatternStrategy()

    def scores(self, query: str) -> dict[str, int]:
        """Return per-category scores after applying the semantic default."""
        scores = {intent: 0 for intent in Intent.ALL}
        scores.update(self.strategy.score(query))
        if max(scores.values()) == 0:
            scores[Intent.SEMANTIC] = 1
        return scores

    def classify(self, query: str) -> str:
        """Return ``"semantic"``, ``"structural"`` or ``"hybrid"`` for *query*."""
        scores = self.scores(query)
        top = max(scores.values())
        primary = next(intent for intent, s in scores.items() if s == top)
        close = sum(1 for s in scores.values() if s >= top - 1)
        if close > 1:
            return Intent.HYBRID
        return primary


# ---------------------------------------------------------------------------
# Query term extraction
# ---------------------------------------------------------------------------

_TERM_PATTERNS = [
    re.compile(r"['\"]([^'\"]+)['\"]"),            # quoted text
    re.compile(r"([\w\-]+\.\w+)"),                   # file names
    re.compile(r"(?<![A-Za-z0-9_])([A-Za-z_][A-Za-z0-9_]*)\("),  # call names
    re.compile(r"class\s+(\w+)"),                    # class names
    # code-like identifiers: snake_case or camelCase
    re.compile(
        r"(?<![A-Za-z0-9_])"
        r"([A-Za-z_][A-Za-z0-9]*(?:_[A-Za-z0-9]+|[a-z0-9][A-Z][A-Za-z0-9]*)+)"
        r"(?![A-Za-z0-9_])"
    ),
]


def extract_query_terms(query: str) -> list[str]:
    """Return candidate entity names mentioned in *query*, in order, without duplicates."""
    terms: list[str] = []
    for pattern in _TERM_PATTERNS:
        for match in pattern.finditer(query):
            term = match.group(1).strip()
            if term and term not in terms:
                terms.append(term)
    return terms

"""
Query side of hybrid memory: intent classification, routing and fusion.
"""

from .classification import Intent, IntentClassifier
from .router import QueryRouter

__all__ = ["Intent", "IntentClassifier", "QueryRouter"]

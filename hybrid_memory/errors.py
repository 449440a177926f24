"""
Exception types raised by the hybrid memory engine.
"""


class HybridMemoryError(Exception):
    """Base class for all hybrid memory errors."""


class EmbeddingError(HybridMemoryError):
    """Raised by an embedding provider when it cannot produce a vector.

    Never reaches callers of ``store`` / ``query``: the embedding service
    substitutes the deterministic local vector instead.
    """


class PartialIngestError(HybridMemoryError):
    """The graph write failed after the vector write succeeded.

    The memory stays searchable semantically but has no structural links.
    Nothing is rolled back.
    """

    def __init__(self, memory_id: str, cause: BaseException):
        self.memory_id = memory_id
        self.cause = cause
        super().__init__(
            f"Memory {memory_id} was stored in the vector index but the "
            f"graph write failed: {cause}"
        )


class MemoryImportError(HybridMemoryError):
    """Raised when an export file is malformed or a batch import fails.

    The import is all-or-nothing: nothing has been applied when this is raised.
    """

"""
hybrid_memory: semantic vector search combined with a code knowledge graph.

Public API for library usage::

    from hybrid_memory import create_memory_system

    async with create_memory_system() as memory:
        await memory.store("function processData(x) { return x; }",
                           {"type": "code", "file_path": "a.js"})
        result = await memory.query("谁调用了 processData")
"""

from .config import Config
from .memory_system import HybridMemorySystem, create_memory_system

__version__ = "0.1.0"

__all__ = ["Config", "HybridMemorySystem", "create_memory_system"]

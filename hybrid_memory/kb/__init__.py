"""
Storage layer for hybrid memory.

  - Vector index: embeddings + cosine k-NN with a JSON snapshot
  - Graph store: SQLite entities and typed relationships
  - Extractor: lexical function/class/import discovery
"""

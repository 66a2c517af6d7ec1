"""
Storage Layer - Markdown files, in-memory Store, watcher, embedding cache.

The storage hierarchy:
1. Markdown files → Canonical source of truth (human-readable, portable)
2. Store → Concurrent in-memory mirror, rebuilt from the files at startup
3. Embedding cache → Content-addressed vectors for semantic search

Everything except the markdown files can be deleted and rebuilt.
"""

from plaintrack.storage.markdown import MarkdownStore
from plaintrack.storage.store import Store
from plaintrack.storage.watcher import StoreWatcher
from plaintrack.storage.embeddings import EmbeddingCache, embedding_key

__all__ = [
    "MarkdownStore",
    "Store",
    "StoreWatcher",
    "EmbeddingCache",
    "embedding_key",
]

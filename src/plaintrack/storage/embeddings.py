"""
EmbeddingCache - content-addressed vectors for semantic search.

Each record's vector is stored under a key derived from its relative path
and modification time:

    key = sha256(f"{relative_path}:{mtime_ns}")

Editing a file changes its mtime and therefore its key, so a cached vector
is never stale: old keys are simply orphaned until prune() sweeps them.
Vectors live in embeddings/<key>.bin as raw little-endian float32.
"""

import asyncio
import hashlib
import os
import tempfile
import threading
from pathlib import Path

import numpy as np

from plaintrack.core.config import settings, get_logger
from plaintrack.core.embedding import (
    SEMANTIC_SEARCH,
    EmbeddingModel,
    cosine_similarity,
    load_embedding_model,
)
from plaintrack.core.errors import FeatureUnavailableError
from plaintrack.core.types import EmbeddingCacheStatus, Record, SearchResult
from plaintrack.storage.store import Store

logger = get_logger("storage.embeddings")

VECTOR_DTYPE = np.dtype("<f4")


def embedding_key(relative_path: str, mtime_ns: int) -> str:
    """Deterministic cache key for one version of one file."""
    normalized = relative_path.replace("\\", "/")
    return hashlib.sha256(f"{normalized}:{mtime_ns}".encode("utf-8")).hexdigest()


def _write_bytes_atomic(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class EmbeddingCache:
    """
    Lazily computed record embeddings backed by a directory of .bin files.
    
    The embedding model is loaded on first use. If it is disabled or fails
    to load, every semantic operation raises FeatureUnavailableError and the
    rest of plaintrack keeps working.
    """
    
    def __init__(
        self,
        store: Store,
        model: EmbeddingModel | None = None,
        cache_dir: Path | None = None,
        dimensions: int | None = None,
        timeout: float | None = None,
    ):
        self.store = store
        self.cache_dir = Path(cache_dir or store.root / "embeddings")
        self.timeout = timeout if timeout is not None else settings.embedding_timeout_seconds
        self._model = model
        self._dimensions = dimensions or (model.dimensions if model else settings.embedding_dimensions)
        self._vectors: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()
        self._loaded = False
    
    # ==========================================
    # Model
    # ==========================================
    
    @property
    def model(self) -> EmbeddingModel:
        """The embedding model, loading it on first access."""
        if self._model is None:
            self._model = load_embedding_model()
            self._dimensions = self._model.dimensions
        return self._model
    
    @property
    def dimensions(self) -> int:
        return self._dimensions
    
    def is_available(self) -> bool:
        try:
            self.model
        except FeatureUnavailableError:
            return False
        return True
    
    async def _with_timeout(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise FeatureUnavailableError(
                SEMANTIC_SEARCH, f"embedding model did not respond within {self.timeout}s"
            ) from e
    
    # ==========================================
    # Disk cache
    # ==========================================
    
    def _path_for(self, key: str) -> Path:
        return self.cache_dir / f"{key}.bin"
    
    def _read_vector(self, path: Path) -> np.ndarray | None:
        try:
            vector = np.fromfile(path, dtype=VECTOR_DTYPE)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read embedding {path.name}: {e}")
            return None
        
        if vector.shape != (self.dimensions,):
            logger.warning(
                f"Ignoring embedding {path.name}: expected {self.dimensions} dimensions, got {vector.size}"
            )
            return None
        if not np.all(np.isfinite(vector)):
            logger.warning(f"Ignoring embedding {path.name}: contains non-finite values")
            return None
        return vector
    
    def load(self) -> int:
        """Read every .bin file into memory. Returns the number of usable vectors."""
        vectors: dict[str, np.ndarray] = {}
        if self.cache_dir.exists():
            for path in sorted(self.cache_dir.glob("*.bin")):
                vector = self._read_vector(path)
                if vector is not None:
                    vectors[path.stem] = vector
        
        with self._lock:
            self._vectors = vectors
            self._loaded = True
        logger.debug(f"Loaded {len(vectors)} embeddings from {self.cache_dir}")
        return len(vectors)
    
    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()
    
    def _put(self, key: str, vector: np.ndarray) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        _write_bytes_atomic(self._path_for(key), vector.astype(VECTOR_DTYPE).tobytes())
        with self._lock:
            self._vectors[key] = vector
    
    def _to_vector(self, values) -> np.ndarray:
        vector = np.asarray(values, dtype=VECTOR_DTYPE)
        if vector.shape != (self.dimensions,):
            raise FeatureUnavailableError(
                SEMANTIC_SEARCH,
                f"embedding model returned {vector.size} dimensions, expected {self.dimensions}",
            )
        return vector
    
    # ==========================================
    # Keys
    # ==========================================
    
    def key_for(self, record: Record) -> str | None:
        """Current cache key for a record, or None if it has no backing file."""
        if record.file_path is None or record.mtime_ns is None:
            return None
        return embedding_key(self.store.files.relative_path(record.file_path), record.mtime_ns)
    
    def get(self, record: Record) -> np.ndarray | None:
        """Cached vector for the record's current key, without computing one."""
        self._ensure_loaded()
        key = self.key_for(record)
        if key is None:
            return None
        with self._lock:
            return self._vectors.get(key)
    
    # ==========================================
    # Computing embeddings
    # ==========================================
    
    async def ensure(self, record: Record) -> np.ndarray:
        """Return the record's embedding, computing and caching it if missing."""
        model = self.model
        cached = self.get(record)
        if cached is not None:
            return cached
        
        values = await self._with_timeout(model.embed(record.embedding_text()))
        vector = self._to_vector(values)
        key = self.key_for(record)
        if key is not None:
            self._put(key, vector)
        return vector
    
    async def ensure_all(self, records: list[Record] | None = None) -> int:
        """
        Embed every record that has no cached vector yet, in batches.
        
        Returns the number of embeddings generated.
        """
        model = self.model
        self._ensure_loaded()
        if records is None:
            records = self.store.list_records()
        
        missing: list[tuple[str, Record]] = []
        with self._lock:
            for record in records:
                key = self.key_for(record)
                if key is not None and key not in self._vectors:
                    missing.append((key, record))
        
        if not missing:
            return 0
        
        logger.info(f"Generating {len(missing)} embeddings with {model.name}")
        results = await self._with_timeout(
            model.embed_batch([record.embedding_text() for _, record in missing])
        )
        for (key, _), values in zip(missing, results):
            self._put(key, self._to_vector(values))
        return len(missing)
    
    async def rebuild(self) -> int:
        """Delete every cached vector and embed all records again."""
        self.model  # Fail before deleting anything
        self.clear()
        return await self.ensure_all()
    
    # ==========================================
    # Search
    # ==========================================
    
    def search(
        self,
        query_vector: np.ndarray,
        limit: int = 10,
        min_threshold: float | None = None,
    ) -> list[SearchResult]:
        """
        Rank records by cosine similarity to query_vector.
        
        Only records with a vector under their current key take part. Results
        are ordered by descending similarity, then ascending record ID.
        """
        self._ensure_loaded()
        query = np.asarray(query_vector, dtype=VECTOR_DTYPE)
        
        results: list[SearchResult] = []
        for record in self.store.snapshot().values():
            vector = self.get(record)
            if vector is None:
                continue
            similarity = cosine_similarity(query, vector)
            if min_threshold is not None and similarity < min_threshold:
                continue
            results.append(SearchResult(record=record, similarity=similarity))
        
        results.sort(key=lambda r: (-r.similarity, r.record.id))
        return results[:limit]
    
    async def search_text(
        self,
        query: str,
        limit: int = 10,
        min_threshold: float | None = None,
    ) -> list[SearchResult]:
        """Embed missing records and the query, then search."""
        model = self.model
        await self.ensure_all()
        values = await self._with_timeout(model.embed(query))
        return self.search(self._to_vector(values), limit=limit, min_threshold=min_threshold)
    
    # ==========================================
    # Maintenance
    # ==========================================
    
    def _disk_keys(self) -> list[str]:
        if not self.cache_dir.exists():
            return []
        return sorted(p.stem for p in self.cache_dir.glob("*.bin"))
    
    def _valid_keys(self) -> set[str]:
        return {embedding_key(path, mtime_ns) for path, mtime_ns in self.store.record_keys()}
    
    def prune(self) -> int:
        """
        Delete every cached vector whose key matches no current (path, mtime).
        
        Returns the number of files removed.
        """
        valid = self._valid_keys()
        removed = 0
        for key in self._disk_keys():
            if key in valid:
                continue
            self._path_for(key).unlink(missing_ok=True)
            with self._lock:
                self._vectors.pop(key, None)
            removed += 1
        
        if removed:
            logger.info(f"Pruned {removed} orphaned embeddings")
        return removed
    
    def clear(self) -> int:
        """Delete every cached vector. Returns the number of files removed."""
        removed = 0
        for key in self._disk_keys():
            self._path_for(key).unlink(missing_ok=True)
            removed += 1
        with self._lock:
            self._vectors = {}
            self._loaded = True
        return removed
    
    def coverage(self) -> tuple[int, int]:
        """(records with a current embedding, total records)."""
        records = self.store.list_records()
        with_embedding = sum(1 for r in records if self.get(r) is not None)
        return with_embedding, len(records)
    
    def status(self) -> EmbeddingCacheStatus:
        enabled = self.is_available()
        disk_keys = self._disk_keys()
        valid = self._valid_keys()
        with_embedding, total = self.coverage()
        
        return EmbeddingCacheStatus(
            enabled=enabled,
            model_name=self._model.name if self._model else settings.embedding_model,
            dimensions=self.dimensions,
            cache_dir=self.cache_dir,
            entries_on_disk=len(disk_keys),
            orphaned_entries=sum(1 for k in disk_keys if k not in valid),
            records_with_embeddings=with_embedding,
            total_records=total,
        )

"""Vector store over a USearch HNSW index."""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from usearch.index import Index as USearchIndex

from .embeddings import BaseEmbeddingProvider
from .errors import ConfigurationError, UserInputError
from .models import ContentUnit


logger = logging.getLogger(__name__)

SUPPORTED_METRICS = ("cos", "ip", "l2sq")


def validate_threshold(similarity_threshold: Optional[float]) -> float:
    if similarity_threshold is None:
        raise ConfigurationError("similarity_threshold is required")
    if not 0.0 <= float(similarity_threshold) <= 1.0:
        raise ConfigurationError(
            f"similarity_threshold must be within [0, 1], got {similarity_threshold}"
        )
    return float(similarity_threshold)


class VectorStore:
    """
    Holds embedded content units and answers thresholded similarity queries.

    Entries are keyed by content unit id; USearch only knows integer keys, so
    the store keeps the id <-> key mapping next to the index. Unit metadata
    and the raw float32 vectors are kept in memory so the store can be dumped
    and rebuilt without touching the embedding provider.
    """

    def __init__(
        self,
        embeddings: BaseEmbeddingProvider,
        embedding_dim: int,
        similarity_threshold: float = 0.5,
        *,
        name: str = "mnemo",
        metric: str = "cos",
        dtype: str = "f32",
        connectivity: int = 16,
        expansion_add: int = 128,
        expansion_search: int = 64,
        exact: bool = False,
    ):
        if embedding_dim is None or embedding_dim <= 0:
            raise ConfigurationError(f"embedding_dim must be positive, got {embedding_dim}")
        if metric not in SUPPORTED_METRICS:
            raise ConfigurationError(
                f"Unknown metric: {metric}. Supported: {', '.join(SUPPORTED_METRICS)}"
            )
        self.embeddings = embeddings
        self.embedding_dim = int(embedding_dim)
        self.similarity_threshold = validate_threshold(similarity_threshold)
        self.name = name
        self.metric = metric
        self.dtype = dtype
        self.connectivity = connectivity
        self.expansion_add = expansion_add
        self.expansion_search = expansion_search
        self.exact = exact
        self._lock = threading.RLock()

        self._reset()

    @classmethod
    def create(
        cls,
        embeddings: BaseEmbeddingProvider,
        similarity_threshold: float = 0.5,
        embedding_dim: Optional[int] = None,
        **kwargs,
    ) -> "VectorStore":
        """Create a store, probing the provider for its dimensionality when not given."""
        validate_threshold(similarity_threshold)
        if embedding_dim is None:
            embedding_dim = len(embeddings.embed_query("test"))
            logger.debug(f"Probed embedding dimension: {embedding_dim}")
        return cls(embeddings, embedding_dim, similarity_threshold, **kwargs)

    def _reset(self) -> None:
        self.index = USearchIndex(
            ndim=self.embedding_dim,
            metric=self.metric,
            dtype=self.dtype,
            connectivity=self.connectivity,
            expansion_add=self.expansion_add,
            expansion_search=self.expansion_search,
        )
        self._entries: Dict[str, ContentUnit] = {}
        self._vectors: Dict[str, np.ndarray] = {}
        self._keys: Dict[str, int] = {}
        self._ids_by_key: Dict[int, str] = {}
        self._next_key = 0

    def _as_matrix(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != self.embedding_dim:
            raise ConfigurationError(
                f"Embedding dimensionality mismatch: store expects {self.embedding_dim}, "
                f"got shape {matrix.shape}"
            )
        return matrix

    def _insert(self, units: Sequence[ContentUnit], matrix: np.ndarray) -> None:
        # Repeated ids within one call collapse to the last occurrence
        rows: Dict[str, int] = {}
        for row, unit in enumerate(units):
            rows.pop(unit.id, None)
            rows[unit.id] = row
        units = [units[row] for row in rows.values()]
        matrix = matrix[list(rows.values())]

        with self._lock:
            self._remove_keys([u.id for u in units if u.id in self._keys])
            keys = np.arange(self._next_key, self._next_key + len(units), dtype=np.uint64)
            self._next_key += len(units)
            self.index.add(keys, matrix)
            for key, unit, vector in zip(keys, units, matrix):
                self._keys[unit.id] = int(key)
                self._ids_by_key[int(key)] = unit.id
                self._entries[unit.id] = unit
                self._vectors[unit.id] = vector

    def _remove_keys(self, ids: Sequence[str]) -> int:
        removed = 0
        with self._lock:
            for unit_id in ids:
                key = self._keys.pop(unit_id, None)
                if key is None:
                    continue
                self.index.remove(key)
                del self._ids_by_key[key]
                del self._entries[unit_id]
                del self._vectors[unit_id]
                removed += 1
        return removed

    def add_documents(self, units: Sequence[ContentUnit]) -> List[str]:
        """Embed units with one batched provider call and insert them."""
        if not units:
            return []
        logger.info(f"Adding {len(units)} documents to vector store '{self.name}'")
        # Provider errors propagate as-is
        vectors = self.embeddings.embed_documents([u.rendered_text for u in units])
        self._insert(list(units), self._as_matrix(vectors))
        return [u.id for u in units]

    def add_vectors(self, units: Sequence[ContentUnit], vectors: Sequence[Sequence[float]]) -> List[str]:
        """Insert precomputed vectors."""
        if not units:
            return []
        if len(units) != len(vectors):
            raise ConfigurationError(f"Got {len(units)} units but {len(vectors)} vectors")
        self._insert(list(units), self._as_matrix(vectors))
        return [u.id for u in units]

    def delete(self, ids: Sequence[str]) -> int:
        """Remove entries by id. Unknown ids are ignored."""
        removed = self._remove_keys(list(ids))
        logger.debug(f"Removed {removed} of {len(ids)} requested entries")
        return removed

    def similarity_search(
        self, query_vector: Sequence[float], k: int
    ) -> List[Tuple[ContentUnit, float]]:
        """
        Return at most k entries scoring at least the similarity threshold.

        Results are ordered by descending score (ties broken by id).
        """
        if k is None or k <= 0:
            raise ConfigurationError(f"k must be positive, got {k}")
        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape != (self.embedding_dim,):
            raise ConfigurationError(
                f"Query dimensionality mismatch: store expects {self.embedding_dim}, "
                f"got shape {query.shape}"
            )
        hits: List[Tuple[ContentUnit, float]] = []
        with self._lock:
            if not self._keys:
                return []
            matches = self.index.search(query, min(k, len(self._keys)), exact=self.exact)
            for match in matches:
                unit_id = self._ids_by_key.get(int(match.key))
                unit = self._entries.get(unit_id) if unit_id is not None else None
                if unit is None:
                    continue
                score = self._score(float(match.distance))
                if score >= self.similarity_threshold:
                    hits.append((unit, score))

        hits.sort(key=lambda hit: (-hit[1], hit[0].id))
        return hits[:k]

    def similarity_search_by_text(self, query: str, k: int) -> List[Tuple[ContentUnit, float]]:
        """Embed a query string and search with it."""
        if not query or not query.strip():
            raise UserInputError("Query must not be empty")
        return self.similarity_search(self.embeddings.embed_query(query), k)

    def _score(self, distance: float) -> float:
        """Convert a USearch distance to a similarity (higher is better)."""
        if self.metric == "l2sq":
            return 1.0 / (1.0 + distance)
        # cos and ip distances are 1 - similarity
        return 1.0 - distance

    def set_similarity_threshold(self, similarity_threshold: float) -> None:
        self.similarity_threshold = validate_threshold(similarity_threshold)

    def get_data(self) -> Dict[str, Any]:
        """Dump every entry and its vector; order is insertion order."""
        with self._lock:
            ids = list(self._entries)
            vectors = (
                np.stack([self._vectors[i] for i in ids]).astype(np.float32)
                if ids
                else np.zeros((0, self.embedding_dim), dtype=np.float32)
            )
            entries = [self._entries[i].to_dict() for i in ids]
        return {
            "name": self.name,
            "embedding_dim": self.embedding_dim,
            "metric": self.metric,
            "entries": entries,
            "vectors": vectors,
        }

    def restore(self, dump: Dict[str, Any]) -> None:
        """Replace the whole store with a dump produced by get_data()."""
        dim = int(dump.get("embedding_dim", -1))
        if dim != self.embedding_dim:
            raise ConfigurationError(
                f"Cannot restore a {dim}-dimensional dump into a "
                f"{self.embedding_dim}-dimensional store"
            )
        logger.debug("Restoring vector store from backup")
        units = [ContentUnit.from_dict(entry) for entry in dump.get("entries", [])]
        vectors = np.asarray(dump.get("vectors"), dtype=np.float32).reshape(len(units), dim)
        with self._lock:
            self._reset()
            if units:
                self._insert(units, vectors)
        logger.info(f"Restored vector store '{self.name}' with {len(self)} entries")

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

"""Incremental indexing over a paired vector store and record manager."""

import json
import logging
import struct
import time
from typing import Callable, Dict, Iterator, List, Optional, Sequence

import numpy as np

from .embeddings import BaseEmbeddingProvider
from .errors import ConfigurationError, IndexConsistencyError, UserInputError
from .index import VectorStore
from .models import ContentUnit, IndexingStats, IndexRecord, SearchResult
from .storage import RecordManager


logger = logging.getLogger(__name__)

INDEXING_MODES = ("full", "by_file")

# Snapshot layout: magic, format version, header length, JSON header, float32 vectors
_SNAPSHOT_MAGIC = b"MNEM"
_SNAPSHOT_VERSION = 1
_SNAPSHOT_HEADER = struct.Struct("<4sII")


def batch(size: int, items: Sequence) -> List[list]:
    """Partition items into lists of at most ``size`` elements."""
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def dedupe(units: Sequence[ContentUnit]) -> List[ContentUnit]:
    """Keep the first occurrence of every id, preserving order."""
    seen = set()
    unique = []
    for unit in units:
        if unit.id in seen:
            continue
        seen.add(unit.id)
        unique.append(unit)
    return unique


def pack_snapshot(vector_store_dump: Dict, record_manager_dump: List[Dict]) -> bytes:
    """Pack both dumps into one binary payload."""
    vectors = np.ascontiguousarray(vector_store_dump["vectors"], dtype="<f4")
    header = {
        "vector_store": {k: v for k, v in vector_store_dump.items() if k != "vectors"},
        "record_manager": record_manager_dump,
        "vectors_shape": list(vectors.shape),
    }
    header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
    return (
        _SNAPSHOT_HEADER.pack(_SNAPSHOT_MAGIC, _SNAPSHOT_VERSION, len(header_bytes))
        + header_bytes
        + vectors.tobytes()
    )


def unpack_snapshot(payload: bytes):
    """Inverse of pack_snapshot. Returns (vector_store_dump, record_manager_dump)."""
    if len(payload) < _SNAPSHOT_HEADER.size:
        raise ConfigurationError("Snapshot payload is truncated")
    magic, version, header_len = _SNAPSHOT_HEADER.unpack_from(payload)
    if magic != _SNAPSHOT_MAGIC or version != _SNAPSHOT_VERSION:
        raise ConfigurationError(f"Unsupported snapshot format (magic={magic!r}, version={version})")

    start = _SNAPSHOT_HEADER.size
    header = json.loads(payload[start:start + header_len].decode("utf-8"))
    rows, dim = header["vectors_shape"]
    vectors = np.frombuffer(payload[start + header_len:], dtype="<f4")
    if vectors.size != rows * dim:
        raise ConfigurationError("Snapshot vector block does not match its header")

    vector_store_dump = dict(header["vector_store"])
    vector_store_dump["vectors"] = vectors.reshape(rows, dim).astype(np.float32)
    return vector_store_dump, header["record_manager"]


class KnowledgeIndex:
    """
    Keeps a vector store and its record manager in step.

    The record manager decides what needs embedding; the vector store holds
    the embeddings. Writes to the two are paired but not transactional, see
    ``reconcile`` for the repair pass.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        record_manager: RecordManager,
        num_docs_to_retrieve: int = 20,
        clock: Optional[Callable[[], float]] = None,
    ):
        if num_docs_to_retrieve <= 0:
            raise ConfigurationError(
                f"num_docs_to_retrieve must be positive, got {num_docs_to_retrieve}"
            )
        self.vector_store = vector_store
        self.record_manager = record_manager
        self.num_docs_to_retrieve = num_docs_to_retrieve
        self.clock = clock or time.time
        self.consistency_errors: List[IndexConsistencyError] = []

    @classmethod
    def create(
        cls,
        embeddings: BaseEmbeddingProvider,
        similarity_threshold: float = 0.5,
        db_path: str = ":memory:",
        num_docs_to_retrieve: int = 20,
        embedding_dim: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
        **store_kwargs,
    ) -> "KnowledgeIndex":
        vector_store = VectorStore.create(
            embeddings, similarity_threshold, embedding_dim=embedding_dim, **store_kwargs
        )
        return cls(vector_store, RecordManager(db_path), num_docs_to_retrieve, clock=clock)

    # ============ Indexing ============

    def index_units(
        self,
        units: Sequence[ContentUnit],
        mode: str = "full",
        batch_size: int = 10,
    ) -> Iterator[IndexingStats]:
        """
        Index a full set of content units, yielding running totals.

        Yields once per batch and once more after stale entries were
        deleted. In 'full' mode every record not seen during this run is
        stale; in 'by_file' mode only records of sources present in
        ``units`` are considered.

        Raises:
            ConfigurationError: On unknown mode or non-positive batch size,
                before the generator is started
        """
        if mode not in INDEXING_MODES:
            raise ConfigurationError(
                f"Unknown indexing mode: {mode}. Supported: {', '.join(INDEXING_MODES)}"
            )
        if batch_size is None or batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
        return self._index_units(list(units), mode, batch_size)

    def _index_units(
        self, units: List[ContentUnit], mode: str, batch_size: int
    ) -> Iterator[IndexingStats]:
        index_start_time = self.clock()
        stats = IndexingStats()

        for current in batch(batch_size, units):
            unique = dedupe(current)
            stats.num_skipped += len(current) - len(unique)

            already_indexed = self.record_manager.exists([u.id for u in unique])
            to_embed = [u for u, known in zip(unique, already_indexed) if not known]
            stats.num_skipped += len(unique) - len(to_embed)

            if to_embed:
                self.vector_store.add_documents(to_embed)
                stats.num_added += len(to_embed)

            # Refresh every unit seen this run, embedded or not
            self.record_manager.update([
                IndexRecord(id=u.id, source_path=u.source_path, indexed_at=self.clock())
                for u in unique
            ])
            logger.debug(
                f"Indexed batch of {len(current)}: added {len(to_embed)}, "
                f"running totals {stats.to_dict()}"
            )
            yield IndexingStats(**stats.to_dict())

        if mode == "by_file":
            sources = sorted({u.source_path for u in units})
            ids_to_delete = self.record_manager.get_ids_to_delete(
                indexed_before=index_start_time, sources=sources
            )
        else:
            ids_to_delete = self.record_manager.get_ids_to_delete(indexed_before=index_start_time)

        self._paired_delete(ids_to_delete)
        stats.num_deleted += len(ids_to_delete)
        logger.info(
            f"Indexed {'by file' if mode == 'by_file' else 'all'}: added {stats.num_added}, "
            f"skipped {stats.num_skipped}, deleted {stats.num_deleted} documents"
        )
        yield IndexingStats(**stats.to_dict())

    def index_all(
        self, units: Sequence[ContentUnit], mode: str = "full", batch_size: int = 10
    ) -> IndexingStats:
        """Run index_units to completion and return the final totals."""
        stats = IndexingStats()
        for stats in self.index_units(units, mode=mode, batch_size=batch_size):
            pass
        return stats

    def delete_units(
        self,
        units: Optional[Sequence[ContentUnit]] = None,
        sources: Optional[Sequence[str]] = None,
    ) -> int:
        """Unindex the given units, or every unit of the given sources."""
        if sources is not None:
            ids = self.record_manager.get_ids_to_delete(sources=list(sources))
            self._paired_delete(ids)
            logger.info(f"Deleted {len(ids)} documents based on sources: {list(sources)}")
        elif units is not None:
            ids = [u.id for u in units]
            self._paired_delete(ids)
            logger.info(f"Deleted {len(ids)} documents based on units")
        else:
            raise UserInputError("delete_units must be called with either sources or units")
        return len(ids)

    def _paired_delete(self, ids: Sequence[str]) -> None:
        """
        Delete ids from both stores.

        If exactly one side fails the failure is logged and recorded in
        ``consistency_errors``; the other side is not rolled back. If both
        fail the first error propagates.
        """
        if not ids:
            return
        failures = []
        for side, delete in (
            ("vector_store", self.vector_store.delete),
            ("record_manager", self.record_manager.delete_ids),
        ):
            try:
                delete(list(ids))
            except Exception as e:
                failures.append((side, e))

        if len(failures) == 2:
            raise failures[0][1]
        if failures:
            side, cause = failures[0]
            error = IndexConsistencyError(
                f"Deleting {len(ids)} ids from {side} failed; stores are out of sync",
                failed_side=side,
                ids_count=len(ids),
                cause=cause,
            )
            self.consistency_errors.append(error)
            logger.error(str(error), exc_info=cause)

    def reconcile(self) -> Dict[str, int]:
        """
        Remove entries present in only one of the two stores.

        Returns counts of orphaned vectors and orphaned records removed.
        """
        vector_ids = set(self.vector_store.ids())
        record_ids = set(self.record_manager.ids())
        orphan_vectors = sorted(vector_ids - record_ids)
        orphan_records = sorted(record_ids - vector_ids)
        if orphan_vectors:
            self.vector_store.delete(orphan_vectors)
        if orphan_records:
            self.record_manager.delete_ids(orphan_records)
        if orphan_vectors or orphan_records:
            logger.info(
                f"Reconciled index: removed {len(orphan_vectors)} orphaned vectors "
                f"and {len(orphan_records)} orphaned records"
            )
        self.consistency_errors.clear()
        return {"orphan_vectors": len(orphan_vectors), "orphan_records": len(orphan_records)}

    # ============ Retrieval ============

    def search(self, query: str, k: Optional[int] = None) -> List[SearchResult]:
        """Retrieve the units most similar to a query string."""
        hits = self.vector_store.similarity_search_by_text(
            query, k if k is not None else self.num_docs_to_retrieve
        )
        return [SearchResult(unit=unit, score=score) for unit, score in hits]

    def set_num_docs_to_retrieve(self, num_docs_to_retrieve: int) -> None:
        if num_docs_to_retrieve <= 0:
            raise ConfigurationError(
                f"num_docs_to_retrieve must be positive, got {num_docs_to_retrieve}"
            )
        self.num_docs_to_retrieve = num_docs_to_retrieve

    def set_similarity_threshold(self, similarity_threshold: float) -> None:
        self.vector_store.set_similarity_threshold(similarity_threshold)

    # ============ Snapshots ============

    def get_data(self) -> bytes:
        """Serialize the whole corpus (vectors + ledger) into one payload."""
        return pack_snapshot(self.vector_store.get_data(), self.record_manager.get_data())

    def load(self, payload: bytes) -> None:
        """Replace the whole corpus with a payload produced by get_data()."""
        vector_store_dump, record_manager_dump = unpack_snapshot(payload)
        # Validate dimensionality before touching either store
        if int(vector_store_dump.get("embedding_dim", -1)) != self.vector_store.embedding_dim:
            raise ConfigurationError(
                f"Snapshot dimensionality {vector_store_dump.get('embedding_dim')} does not "
                f"match store dimensionality {self.vector_store.embedding_dim}"
            )
        self.vector_store.restore(vector_store_dump)
        self.record_manager.restore(record_manager_dump)

    def close(self) -> None:
        self.record_manager.close()

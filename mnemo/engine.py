"""Main Mnemo engine orchestrator."""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .config import MnemoConfig
from .embeddings import BaseEmbeddingProvider, create_embedding_provider, get_cache
from .generation import BaseGenerator, create_generator
from .knowledge import KnowledgeIndex
from .models import ContentUnit, IndexingStats, ProgressEvent, SearchResult
from .pipeline import RAGPipeline
from .reducer import ContextReducer
from .tokens import TokenCounter, create_token_counter


logger = logging.getLogger(__name__)


class Mnemo:
    """
    Knowledge engine: incremental indexing, retrieval and streamed answers.

    Providers are built from the config through their registries unless
    instances are passed in. Indexing runs and snapshot loads are serialized
    through one lock; ``run`` streams progress events and ``stop_run`` asks
    the active run to stop at its next step.
    """

    def __init__(
        self,
        config: MnemoConfig,
        *,
        embedder: Optional[BaseEmbeddingProvider] = None,
        generator: Optional[BaseGenerator] = None,
        token_counter: Optional[TokenCounter] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config.validate()
        self._lock = threading.RLock()
        self._stop_event = threading.Event()

        embedding_kwargs = {"base_url": config.embedding_base_url} if config.embedding_base_url else {}
        self.embedder = embedder or create_embedding_provider(
            config.embedding_provider, config.embedding_model, **embedding_kwargs
        )
        self.generator = generator or create_generator(
            config.generation_provider,
            config.generation_model,
            temperature=config.temperature,
            context_window=config.context_window,
            base_url=config.generation_base_url,
        )
        self.token_counter = token_counter or create_token_counter(
            config.token_counter,
            encoding_name=config.token_encoding,
            model=config.generation_model,
        )

        self.knowledge_index = KnowledgeIndex.create(
            self.embedder,
            config.similarity_threshold,
            db_path=config.db_path,
            num_docs_to_retrieve=config.num_docs_to_retrieve,
            embedding_dim=config.embedding_dim,
            clock=clock,
            metric=config.metric,
            dtype=config.dtype,
            connectivity=config.connectivity,
            expansion_add=config.expansion_add,
            expansion_search=config.expansion_search,
            exact=config.exact_search,
        )
        self.reducer = ContextReducer(
            self.generator,
            self.token_counter,
            config.context_window,
            max_passes=config.max_reduce_passes,
        )
        self.pipeline = RAGPipeline(self.knowledge_index, self.reducer, self.generator)

        self._restore_snapshot()

    def _restore_snapshot(self) -> None:
        """Load the persisted snapshot, then drop ledger rows without vectors."""
        snapshot = self.snapshot_path
        if snapshot is not None and snapshot.exists():
            logger.info(f"Loading snapshot from '{snapshot}'")
            self.knowledge_index.load(snapshot.read_bytes())
        self.knowledge_index.reconcile()

    @property
    def snapshot_path(self) -> Optional[Path]:
        return Path(self.config.snapshot_path) if self.config.snapshot_path else None

    # ============ Indexing ============

    def index(
        self,
        units: Sequence[ContentUnit],
        mode: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> Iterator[IndexingStats]:
        """
        Index content units, yielding running totals after every batch.

        Example:
            >>> for stats in mnemo.index(load_markdown_units(["./notes"]), mode="by_file"):
            ...     print(stats)
        """
        mode = mode if mode is not None else self.config.indexing_mode
        batch_size = batch_size if batch_size is not None else self.config.batch_size
        logger.info(f"Embedding {len(units)} documents in mode '{mode}'")
        run = self.knowledge_index.index_units(units, mode=mode, batch_size=batch_size)
        return self._locked(run)

    def _locked(self, iterator: Iterator) -> Iterator:
        with self._lock:
            yield from iterator

    def index_all(
        self,
        units: Sequence[ContentUnit],
        mode: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> IndexingStats:
        """Index content units and return the final totals."""
        stats = IndexingStats()
        for stats in self.index(units, mode=mode, batch_size=batch_size):
            pass
        return stats

    def delete(
        self,
        units: Optional[Sequence[ContentUnit]] = None,
        sources: Optional[Sequence[str]] = None,
    ) -> int:
        """Unindex units, or every unit of the given sources."""
        with self._lock:
            return self.knowledge_index.delete_units(units=units, sources=sources)

    def reconcile(self) -> Dict[str, int]:
        with self._lock:
            return self.knowledge_index.reconcile()

    # ============ Querying ============

    def search(self, query: str, k: Optional[int] = None) -> List[SearchResult]:
        """Retrieve the most similar units for a query."""
        return self.knowledge_index.search(query, k)

    def run(self, query: str, chat_history: str = "", mode: str = "rag") -> Iterator[ProgressEvent]:
        """
        Answer a query, streaming progress events.

        Events move through startup, retrieving, reducing and generating;
        ``stop_run`` ends the stream with a 'stopped' event. ``mode='conversation'``
        answers from the chat history alone and only emits generating events.
        """
        logger.info(f"Running query in mode '{mode}'")
        self._stop_event.clear()
        return self.pipeline.run(query, chat_history, stop_event=self._stop_event, mode=mode)

    def stop_run(self) -> None:
        logger.info("Stopping run...")
        self._stop_event.set()

    def set_similarity_threshold(self, similarity_threshold: float) -> None:
        self.knowledge_index.set_similarity_threshold(similarity_threshold)

    def set_num_docs_to_retrieve(self, num_docs_to_retrieve: int) -> None:
        self.knowledge_index.set_num_docs_to_retrieve(num_docs_to_retrieve)

    # ============ Persistence ============

    def get_data(self) -> bytes:
        """Snapshot the whole corpus into one binary payload."""
        with self._lock:
            return self.knowledge_index.get_data()

    def load(self, payload: bytes) -> None:
        """Replace the whole corpus with a snapshot payload."""
        with self._lock:
            self.knowledge_index.load(payload)

    def save(self) -> Optional[Path]:
        """Write the snapshot to ``config.snapshot_path``."""
        snapshot = self.snapshot_path
        if snapshot is None:
            return None
        with self._lock:
            snapshot.parent.mkdir(parents=True, exist_ok=True)
            tmp = snapshot.with_suffix(snapshot.suffix + ".tmp")
            tmp.write_bytes(self.knowledge_index.get_data())
            tmp.replace(snapshot)
        logger.info(f"Snapshot saved to '{snapshot}'")
        return snapshot

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        with self._lock:
            return {
                "vectors": len(self.knowledge_index.vector_store),
                "records": len(self.knowledge_index.record_manager),
                "embedding_provider": self.config.embedding_provider,
                "embedding_model": self.config.embedding_model,
                "embedding_dim": self.knowledge_index.vector_store.embedding_dim,
                "generation_model": self.config.generation_model,
                "similarity_threshold": self.knowledge_index.vector_store.similarity_threshold,
                "db_path": self.config.db_path,
                "snapshot_path": self.config.snapshot_path,
                "sources": self.knowledge_index.record_manager.list_sources(),
                "cache": get_cache().stats(),
            }

    def close(self) -> None:
        """Save the snapshot and close connections."""
        with self._lock:
            self.save()
            self.knowledge_index.close()


def create_mnemo(
    db_path: str = "mnemo.db",
    snapshot_path: Optional[str] = "mnemo.snapshot",
    **overrides,
) -> Mnemo:
    """
    Create a Mnemo instance from environment defaults plus overrides.

    Example:
        >>> mnemo = create_mnemo("notes.db", "notes.snapshot", embedding_provider="huggingface")
        >>> mnemo.index_all(load_markdown_units(["./notes"]))
        >>> for event in mnemo.run("What did I write about HNSW?"):
        ...     print(event)
    """
    config = MnemoConfig.from_env(db_path=db_path, snapshot_path=snapshot_path, **overrides)
    return Mnemo(config)

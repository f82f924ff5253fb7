"""
Mnemo: incremental knowledge index with token-budgeted, streamed RAG answers.

Combines:
- A SQLite ledger of indexed content units (content-addressed ids, timestamps)
- A USearch HNSW vector store with thresholded similarity search
- Incremental indexing with in-batch dedup and stale-entry deletion
  ('full' resync or 'by_file' scoped)
- Per-source passage rendering and map-reduce summarization that fits a
  model's context window
- Phase-tagged progress events with cooperative cancellation

Key Features:
- Binary snapshots of the whole corpus (vectors + ledger)
- Reconciliation pass for drift between vector store and ledger
- Embedding providers (OpenAI, HuggingFace, Jina AI) chosen by registry tag
- OpenAI-compatible generation (blocking + streaming)
- tiktoken or character-based token counting
- REST API (FastAPI) and CLI
"""

from .config import MnemoConfig
from .errors import (
    ConfigurationError,
    IndexConsistencyError,
    MnemoError,
    ProviderError,
    ReductionImpossibleError,
    ReductionLimitError,
    UserInputError,
)
from .models import ContentUnit, IndexingStats, IndexRecord, ProgressEvent, SearchResult
from .embeddings import (
    EMBEDDING_REGISTRY,
    BaseEmbeddingProvider,
    HuggingFaceEmbedding,
    JinaEmbedding,
    OpenAIEmbedding,
    create_embedding_provider,
    get_cache,
)
from .generation import GENERATION_REGISTRY, BaseGenerator, OpenAIGenerator, create_generator
from .tokens import TOKEN_COUNTER_REGISTRY, CharTokenCounter, TiktokenCounter, TokenCounter, create_token_counter
from .storage import RecordManager
from .index import VectorStore
from .knowledge import KnowledgeIndex
from .reducer import ContextReducer, PostProcessed, split_by_budget
from .streaming import ProgressBuilder, RunUpdate, StreamTranslator
from .pipeline import RAGPipeline
from .engine import Mnemo, create_mnemo

__version__ = "1.0.0"
__all__ = [
    # Core
    "MnemoConfig",
    "Mnemo",
    "create_mnemo",
    # Models
    "ContentUnit",
    "IndexRecord",
    "IndexingStats",
    "ProgressEvent",
    "SearchResult",
    # Errors
    "MnemoError",
    "ConfigurationError",
    "ProviderError",
    "IndexConsistencyError",
    "ReductionImpossibleError",
    "ReductionLimitError",
    "UserInputError",
    # Providers
    "EMBEDDING_REGISTRY",
    "BaseEmbeddingProvider",
    "OpenAIEmbedding",
    "HuggingFaceEmbedding",
    "JinaEmbedding",
    "create_embedding_provider",
    "get_cache",
    "GENERATION_REGISTRY",
    "BaseGenerator",
    "OpenAIGenerator",
    "create_generator",
    "TOKEN_COUNTER_REGISTRY",
    "TokenCounter",
    "TiktokenCounter",
    "CharTokenCounter",
    "create_token_counter",
    # Components
    "RecordManager",
    "VectorStore",
    "KnowledgeIndex",
    "ContextReducer",
    "PostProcessed",
    "split_by_budget",
    "RunUpdate",
    "ProgressBuilder",
    "StreamTranslator",
    "RAGPipeline",
]

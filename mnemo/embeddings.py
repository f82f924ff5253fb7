"""Embedding generation with caching and multiple provider support."""

import hashlib
import logging
import os
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple, Type, Union

from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import ConfigurationError, MnemoError, ProviderError


logger = logging.getLogger(__name__)


class EmbeddingCache:
    """LRU cache for embeddings to avoid redundant API calls."""

    def __init__(self, maxsize: int = 1000):
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._maxsize = maxsize
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(text: str, model: str) -> str:
        return hashlib.sha256(f"{model}:{text}".encode()).hexdigest()[:16]

    def get(self, text: str, model: str) -> Optional[List[float]]:
        key = self._key(text, model)
        if key in self._cache:
            self._hits += 1
            self._cache.move_to_end(key)
            return self._cache[key]
        self._misses += 1
        return None

    def set(self, text: str, model: str, embedding: List[float]) -> None:
        key = self._key(text, model)
        self._cache[key] = embedding
        self._cache.move_to_end(key)
        while len(self._cache) > self._maxsize:
            self._cache.popitem(last=False)

    def stats(self) -> Dict[str, float]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total > 0 else 0,
            "size": len(self._cache),
            "maxsize": self._maxsize,
        }

    def clear(self) -> None:
        self._cache.clear()
        self._hits = 0
        self._misses = 0


# Global cache instance
_embedding_cache = EmbeddingCache(maxsize=1000)


def get_cache() -> EmbeddingCache:
    """Get the global embedding cache."""
    return _embedding_cache


class BaseEmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    Subclasses implement ``_embed_batch``; callers use ``embed_documents`` and
    ``embed_query``. Any backend failure surfaces as ProviderError.
    """

    name = "base"

    def __init__(self, model: str, use_cache: bool = True):
        self.model = model
        self.use_cache = use_cache

    @abstractmethod
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for a batch of texts (provider-specific)."""

    def embed(self, texts: Union[str, List[str]]) -> List[List[float]]:
        """
        Generate embeddings with caching.

        Args:
            texts: Single text or list of texts

        Returns:
            List of embedding vectors
        """
        if isinstance(texts, str):
            texts = [texts]
        if not texts:
            return []

        if not self.use_cache:
            return self._call(texts)

        cache = get_cache()
        results: List[Optional[List[float]]] = [None] * len(texts)
        missing: List[Tuple[int, str]] = []
        for i, text in enumerate(texts):
            cached = cache.get(text, self.model)
            if cached is not None:
                results[i] = cached
            else:
                missing.append((i, text))

        if missing:
            indices, uncached = zip(*missing)
            for idx, text, embedding in zip(indices, uncached, self._call(list(uncached))):
                cache.set(text, self.model, embedding)
                results[idx] = embedding

        return results  # type: ignore

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return self.embed(list(texts))

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text)[0]

    def _call(self, texts: List[str]) -> List[List[float]]:
        try:
            embeddings = self._embed_batch(texts)
        except MnemoError:
            raise
        except Exception as e:
            raise ProviderError(
                f"Embedding request failed: {e}", provider=self.name, cause=e
            ) from e
        if len(embeddings) != len(texts):
            raise ProviderError(
                f"Expected {len(texts)} embeddings, got {len(embeddings)}",
                provider=self.name,
            )
        return [list(map(float, emb)) for emb in embeddings]


class OpenAIEmbedding(BaseEmbeddingProvider):
    """OpenAI embedding provider with retries and caching."""

    name = "openai"
    default_model = "text-embedding-3-small"

    def __init__(
        self,
        model: str = default_model,
        openai_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        use_cache: bool = True,
    ):
        super().__init__(model, use_cache)
        self.api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass openai_api_key parameter."
            )
        self.client = OpenAI(api_key=self.api_key, base_url=base_url)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        response = self.client.embeddings.create(model=self.model, input=texts)
        # Sort by index to ensure correct order
        return [item.embedding for item in sorted(response.data, key=lambda x: x.index)]


class HuggingFaceEmbedding(BaseEmbeddingProvider):
    """
    HuggingFace sentence-transformers embedding provider (local, free).

    Requires the ``local`` extra: ``pip install mnemo[local]``.
    """

    name = "huggingface"
    default_model = "all-MiniLM-L6-v2"

    def __init__(
        self,
        model: str = default_model,
        hf_token: Optional[str] = None,
        use_cache: bool = True,
    ):
        super().__init__(model, use_cache)
        self.hf_token = hf_token or os.environ.get("HF_TOKEN")
        self._model = None

    def _load_model(self):
        """Lazy-load the model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ConfigurationError(
                    "sentence-transformers not installed. Run: pip install mnemo[local]",
                    cause=e,
                ) from e
            logger.debug(f"Loading SentenceTransformer model '{self.model}'")
            self._model = SentenceTransformer(self.model, token=self.hf_token)
        return self._model

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        model = self._load_model()
        return model.encode(texts, convert_to_numpy=True).tolist()


class JinaEmbedding(BaseEmbeddingProvider):
    """Jina AI embedding provider (API-based, JINA_API_KEY)."""

    name = "jina"
    default_model = "jina-embeddings-v3"
    API_URL = "https://api.jina.ai/v1/embeddings"

    def __init__(
        self,
        model: str = default_model,
        jina_api_key: Optional[str] = None,
        use_cache: bool = True,
        task: Optional[str] = None,
    ):
        super().__init__(model, use_cache)
        self.api_key = jina_api_key or os.environ.get("JINA_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "Jina API key required. Set JINA_API_KEY environment variable "
                "or pass jina_api_key parameter."
            )
        self.task = task

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        import requests

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload = {"model": self.model, "input": texts}
        if self.task:
            payload["task"] = self.task

        response = requests.post(self.API_URL, headers=headers, json=payload, timeout=60)
        response.raise_for_status()
        return [item["embedding"] for item in response.json()["data"]]


# ============ Provider Registry ============

EMBEDDING_REGISTRY: Dict[str, Type[BaseEmbeddingProvider]] = {
    "openai": OpenAIEmbedding,
    "huggingface": HuggingFaceEmbedding,
    "jina": JinaEmbedding,
}

_ALIASES = {
    "openai-embedding": "openai",
    "hf": "huggingface",
    "sentence-transformers": "huggingface",
    "jina-ai": "jina",
}


def create_embedding_provider(
    provider: str = "openai",
    model: Optional[str] = None,
    **kwargs,
) -> BaseEmbeddingProvider:
    """
    Create an embedding provider from its registry tag.

    Example:
        >>> embedder = create_embedding_provider("huggingface", "all-MiniLM-L6-v2")
    """
    tag = provider.lower()
    tag = _ALIASES.get(tag, tag)
    provider_cls = EMBEDDING_REGISTRY.get(tag)
    if provider_cls is None:
        raise ConfigurationError(
            f"Unknown embedding provider: {provider}. "
            f"Supported: {', '.join(sorted(EMBEDDING_REGISTRY))}"
        )
    return provider_cls(model or provider_cls.default_model, **kwargs)

"""
Configuration file for pytest.

Adds the project root to the Python path so the 'mnemo' package is found
without installing it, and provides deterministic stand-ins for the
embedding, generation and token counting backends.
"""

import hashlib
import itertools
import sys
from pathlib import Path
from typing import Iterator, List, Sequence

import numpy as np
import pytest

# Add the project root directory to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from mnemo.config import MnemoConfig  # noqa: E402
from mnemo.embeddings import BaseEmbeddingProvider  # noqa: E402
from mnemo.engine import Mnemo  # noqa: E402
from mnemo.generation import BaseGenerator  # noqa: E402
from mnemo.knowledge import KnowledgeIndex  # noqa: E402
from mnemo.models import ContentUnit  # noqa: E402
from mnemo.tokens import TokenCounter  # noqa: E402


class FakeEmbeddings(BaseEmbeddingProvider):
    """Hash-seeded vectors with positive components, so cosine scores stay in [0, 1]."""

    name = "fake"

    def __init__(self, dim: int = 8):
        super().__init__("fake-model", use_cache=False)
        self.dim = dim
        self.calls: List[List[str]] = []

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
            vectors.append((np.random.default_rng(seed).random(self.dim) + 0.01).tolist())
        return vectors


class FakeGenerator(BaseGenerator):
    """Returns a fixed summary and streams scripted deltas."""

    name = "fake"

    def __init__(self, summary: str = "short summary", deltas: Sequence[str] = ("Hel", "lo")):
        super().__init__("fake-llm")
        self.summary = summary
        self.deltas = list(deltas)
        self.prompts: List[str] = []

    def _complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.summary

    def _stream(self, prompt: str) -> Iterator[str]:
        self.prompts.append(prompt)
        yield from self.deltas


class WordCounter(TokenCounter):
    """One token per whitespace-separated word."""

    name = "words"

    def count(self, text: str) -> int:
        return len(text.split())


def make_clock():
    ticks = itertools.count(1)
    return lambda: float(next(ticks))


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def clock():
    return make_clock()


@pytest.fixture
def knowledge(embeddings, clock):
    index = KnowledgeIndex.create(embeddings, 0.0, clock=clock, exact=True)
    yield index
    index.close()


@pytest.fixture
def units():
    return [
        ContentUnit("a.md", "Alpha paragraph about vectors", 0, ["a", "# Vectors"]),
        ContentUnit("a.md", "Second alpha paragraph", 1, ["a", "# Vectors"]),
        ContentUnit("b.md", "Beta paragraph about sqlite", 0, ["b"]),
    ]


@pytest.fixture
def engine(tmp_path, embeddings, clock):
    config = MnemoConfig(
        db_path=":memory:",
        snapshot_path=str(tmp_path / "mnemo.snapshot"),
        similarity_threshold=0.0,
        exact_search=True,
    )
    mnemo = Mnemo(
        config,
        embedder=embeddings,
        generator=FakeGenerator(deltas=["a", "b", "c", "d"]),
        token_counter=WordCounter(),
        clock=clock,
    )
    yield mnemo
    mnemo.knowledge_index.close()

"""Token counting backends."""

import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, Optional, Type

from .errors import ConfigurationError


logger = logging.getLogger(__name__)


class TokenCounter(ABC):
    """Counts tokens the way the generation model will."""

    name = "base"

    @abstractmethod
    def count(self, text: str) -> int:
        """Return the token count of ``text``."""

    def __call__(self, text: str) -> int:
        return self.count(text)


class TiktokenCounter(TokenCounter):
    """Counts tokens with a tiktoken encoding (OpenAI-compatible models)."""

    name = "tiktoken"

    def __init__(self, encoding_name: str = "cl100k_base", model: Optional[str] = None):
        import tiktoken

        if model:
            try:
                self.encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                logger.debug(f"No tiktoken mapping for '{model}', using {encoding_name}")
                self.encoding = tiktoken.get_encoding(encoding_name)
        else:
            self.encoding = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        return len(self.encoding.encode(text, disallowed_special=()))


class CharTokenCounter(TokenCounter):
    """Approximates tokens as ``ceil(len(text) / chars_per_token)``."""

    name = "chars"

    def __init__(self, chars_per_token: float = 4.0, **_):
        if chars_per_token <= 0:
            raise ConfigurationError(f"chars_per_token must be positive, got {chars_per_token}")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


TOKEN_COUNTER_REGISTRY: Dict[str, Type[TokenCounter]] = {
    "tiktoken": TiktokenCounter,
    "chars": CharTokenCounter,
}


def create_token_counter(name: str = "tiktoken", **kwargs) -> TokenCounter:
    """Create a token counter from its registry tag."""
    counter_cls = TOKEN_COUNTER_REGISTRY.get(name.lower())
    if counter_cls is None:
        raise ConfigurationError(
            f"Unknown token counter: {name}. "
            f"Supported: {', '.join(sorted(TOKEN_COUNTER_REGISTRY))}"
        )
    return counter_cls(**kwargs)

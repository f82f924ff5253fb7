"""Text generation backends used for summarization and answers."""

import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional, Type

from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import ConfigurationError, MnemoError, ProviderError


logger = logging.getLogger(__name__)


class BaseGenerator(ABC):
    """
    Abstract base class for generation providers.

    ``invoke`` returns the full completion; ``stream`` yields text deltas.
    Backend failures surface as ProviderError.
    """

    name = "base"

    def __init__(self, model: str, temperature: float = 0.5, context_window: int = 8192):
        self.model = model
        self.temperature = temperature
        self.context_window = context_window

    @abstractmethod
    def _complete(self, prompt: str) -> str:
        """Provider-specific blocking completion."""

    @abstractmethod
    def _stream(self, prompt: str) -> Iterator[str]:
        """Provider-specific streaming completion."""

    def invoke(self, prompt: str) -> str:
        try:
            return self._complete(prompt)
        except MnemoError:
            raise
        except Exception as e:
            raise ProviderError(f"Generation request failed: {e}", provider=self.name, cause=e) from e

    def stream(self, prompt: str) -> Iterator[str]:
        deltas = self._stream(prompt)
        try:
            for delta in deltas:
                if delta:
                    yield delta
        except MnemoError:
            raise
        except Exception as e:
            raise ProviderError(f"Streaming request failed: {e}", provider=self.name, cause=e) from e
        finally:
            # Closing early must release the provider's HTTP stream
            close = getattr(deltas, "close", None)
            if close is not None:
                close()


class OpenAIGenerator(BaseGenerator):
    """OpenAI chat completions (also any OpenAI-compatible server via base_url)."""

    name = "openai"
    default_model = "gpt-4o-mini"

    def __init__(
        self,
        model: str = default_model,
        temperature: float = 0.5,
        context_window: int = 8192,
        openai_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(model, temperature, context_window)
        api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key and not base_url:
            raise ConfigurationError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass openai_api_key parameter."
            )
        # Local OpenAI-compatible servers (Ollama, vLLM) accept any key
        self.client = OpenAI(api_key=api_key or "not-needed", base_url=base_url)

    def _messages(self, prompt: str):
        return [{"role": "user", "content": prompt}]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=self._messages(prompt),
            temperature=self.temperature,
        )
        return (response.choices[0].message.content or "").strip()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _open_stream(self, prompt: str):
        return self.client.chat.completions.create(
            model=self.model,
            messages=self._messages(prompt),
            temperature=self.temperature,
            stream=True,
        )

    def _stream(self, prompt: str) -> Iterator[str]:
        with self._open_stream(prompt) as response:
            for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta


GENERATION_REGISTRY: Dict[str, Type[BaseGenerator]] = {
    "openai": OpenAIGenerator,
    "custom_openai": OpenAIGenerator,
}


def create_generator(
    provider: str = "openai",
    model: Optional[str] = None,
    **kwargs,
) -> BaseGenerator:
    """
    Create a generation provider from its registry tag.

    Example:
        >>> llm = create_generator("custom_openai", "llama3", base_url="http://localhost:11434/v1")
    """
    tag = provider.lower()
    generator_cls = GENERATION_REGISTRY.get(tag)
    if generator_cls is None:
        raise ConfigurationError(
            f"Unknown generation provider: {provider}. "
            f"Supported: {', '.join(sorted(GENERATION_REGISTRY))}"
        )
    if tag == "custom_openai" and not kwargs.get("base_url"):
        raise ConfigurationError("custom_openai requires a base_url")
    return generator_cls(model or generator_cls.default_model, **kwargs)

"""Retrieval-augmented generation pipeline emitting incremental run updates."""

import logging
import threading
from typing import Iterator, List, Optional

from . import prompts
from .errors import ConfigurationError, UserInputError
from .generation import BaseGenerator
from .knowledge import KnowledgeIndex
from .models import ProgressEvent
from .reducer import ContextReducer
from .streaming import RunUpdate, StreamTranslator


logger = logging.getLogger(__name__)

RUN_MODES = ("rag", "conversation")


class RAGPipeline:
    """
    query -> retrieval -> post-processing -> reduction -> streamed answer.

    ``stream`` is a lazy generator: each pulled update drives the next step,
    so a consumer that stops pulling also stops the work. In 'conversation'
    mode retrieval is skipped and the answer is based on the chat history only.
    """

    def __init__(
        self,
        knowledge_index: KnowledgeIndex,
        reducer: ContextReducer,
        generator: BaseGenerator,
        rag_prompt: str = prompts.RAG,
        conversation_prompt: str = prompts.CONVERSATION,
    ):
        self.knowledge_index = knowledge_index
        self.reducer = reducer
        self.generator = generator
        self.rag_prompt = rag_prompt
        self.conversation_prompt = conversation_prompt

    def stream(self, query: str, chat_history: str = "", mode: str = "rag") -> Iterator[RunUpdate]:
        if mode not in RUN_MODES:
            raise ConfigurationError(f"Unknown run mode: {mode}. Supported: {', '.join(RUN_MODES)}")
        if not query or not query.strip():
            raise UserInputError("Query must not be empty")
        if mode == "conversation":
            prompt = self.conversation_prompt.format(chat_history=chat_history, query=query)
            return self._generate(prompt)
        return self._stream(query, chat_history)

    def _stream(self, query: str, chat_history: str) -> Iterator[RunUpdate]:
        yield RunUpdate.of(retrieval_started=True)
        results = self.knowledge_index.search(query)
        logger.debug(f"Retrieved {len(results)} documents for query")
        yield RunUpdate.of(documents=len(results))

        post_processed = self.reducer.post_process([r.unit for r in results], query)
        yield RunUpdate.of(notes=len(post_processed.notes), needs_reduce=post_processed.needs_reduce)

        passes: List[int] = []
        context = self.reducer.reduce(
            post_processed, query, on_pass=lambda n, _: passes.append(n)
        )
        if passes:
            yield RunUpdate.of(reduce_pass=passes[-1])

        prompt = self.rag_prompt.format(context=context, chat_history=chat_history, query=query)
        yield from self._generate(prompt)

    def _fit_prompt(self, prompt: str) -> str:
        tokens = self.reducer.count(prompt)
        if tokens >= self.reducer.context_window:
            logger.warning(
                f"Prompt of {tokens} tokens exceeds the {self.reducer.context_window}-token "
                f"context window; asking for a shorter chat history instead"
            )
            return prompts.CHAT_HISTORY_TOO_LONG
        return prompt

    def _generate(self, prompt: str) -> Iterator[RunUpdate]:
        deltas = self.generator.stream(self._fit_prompt(prompt))
        try:
            for delta in deltas:
                yield RunUpdate.of(text_delta=delta)
        finally:
            close = getattr(deltas, "close", None)
            if close is not None:
                close()

    def run(
        self,
        query: str,
        chat_history: str = "",
        stop_event: Optional[threading.Event] = None,
        mode: str = "rag",
    ) -> Iterator[ProgressEvent]:
        """Stream progress events for one query; ``stop_event`` ends the run early."""
        return StreamTranslator(stop_event).translate(self.stream(query, chat_history, mode))

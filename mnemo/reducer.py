"""Retrieval post-processing and token-budgeted map-reduce summarization."""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from . import prompts
from .errors import ConfigurationError, ReductionImpossibleError, ReductionLimitError
from .generation import BaseGenerator
from .models import ContentUnit
from .tokens import TokenCounter


logger = logging.getLogger(__name__)

PASSAGE_SEPARATOR = "\n\n"

CountFn = Callable[[str], int]


@dataclass
class PostProcessed:
    """Rendered per-source notes and whether they exceed the budget."""
    notes: List[str]
    needs_reduce: bool
    token_budget: int


def group_by_source(units: Sequence[ContentUnit]) -> Dict[str, List[ContentUnit]]:
    """Group units by source (first-seen order), each group sorted by sequence."""
    groups: Dict[str, List[ContentUnit]] = {}
    for unit in units:
        groups.setdefault(unit.source_path, []).append(unit)
    for group in groups.values():
        group.sort(key=lambda u: u.sequence_order)
    return groups


def collapse_headers(units: Sequence[ContentUnit]) -> List[str]:
    """
    Render units of one source, emitting only changed header segments.

    A segment is emitted when it differs from the previous unit's segment at
    the same depth, so an unchanged breadcrumb is printed once.
    """
    contents = []
    last_header: List[str] = [""]
    for unit in units:
        lines = [
            segment
            for depth, segment in enumerate(unit.header_path)
            if depth >= len(last_header) or segment != last_header[depth]
        ]
        last_header = list(unit.header_path)
        contents.append("\n".join(lines + [unit.text]))
    return contents


def source_reference(source_path: str) -> str:
    return source_path[:-3] if source_path.endswith(".md") else source_path


def format_note(source_path: str, contents: Sequence[str], part: Optional[int] = None) -> str:
    """Wrap rendered unit texts into one attributable passage."""
    reference = f"Source: [[{source_reference(source_path)}]]"
    if part is not None:
        reference += f" Part {part}"
    return "<note>\n" + reference + "\n" + PASSAGE_SEPARATOR.join(contents) + "\n</note>"


def split_by_budget(passages: Sequence[str], budget: int, count: CountFn) -> List[List[str]]:
    """
    Greedily pack passages into groups whose joined token count fits the budget.

    Raises:
        ReductionImpossibleError: If a group holding a single passage is still
            over budget
    """
    groups: List[List[str]] = []
    current: List[str] = []
    for passage in passages:
        current.append(passage)
        if count(PASSAGE_SEPARATOR.join(current)) <= budget:
            continue
        if len(current) > 1:
            groups.append(current[:-1])
            current = [passage]
        if count(passage) > budget:
            raise ReductionImpossibleError(
                "A single unit exceeds the token budget",
                details={"budget": budget, "tokens": count(passage)},
            )
    if current:
        groups.append(current)
    return groups


class ContextReducer:
    """
    Turns retrieved units into a context string that fits the model.

    ``post_process`` renders per-source notes; ``reduce`` summarizes them in
    map-reduce passes until the joined result fits the token budget. The
    loop stops with ReductionLimitError after ``max_passes`` passes.
    """

    def __init__(
        self,
        generator: BaseGenerator,
        token_counter: TokenCounter,
        context_window: int,
        *,
        initial_reduce_prompt: str = prompts.INITIAL_REDUCE,
        reduce_prompt: str = prompts.REDUCE,
        max_passes: int = 8,
    ):
        if context_window <= 0:
            raise ConfigurationError(f"context_window must be positive, got {context_window}")
        if max_passes <= 0:
            raise ConfigurationError(f"max_passes must be positive, got {max_passes}")
        self.generator = generator
        self.token_counter = token_counter
        self.context_window = context_window
        self.initial_reduce_prompt = initial_reduce_prompt
        self.reduce_prompt = reduce_prompt
        self.max_passes = max_passes

    def count(self, text: str) -> int:
        return self.token_counter.count(text)

    def token_budget(self, query: str) -> int:
        """Context window minus the cost of the larger reduce prompt with empty content."""
        overhead = max(
            self.count(self.initial_reduce_prompt.format(query=query, content="")),
            self.count(self.reduce_prompt.format(query=query, content="")),
        )
        budget = self.context_window - overhead
        if budget <= 0:
            raise ConfigurationError(
                f"Prompt overhead ({overhead} tokens) leaves no room in a "
                f"{self.context_window}-token context window"
            )
        return budget

    def post_process(self, units: Sequence[ContentUnit], query: str) -> PostProcessed:
        """Render retrieved units into per-source notes."""
        budget = self.token_budget(query)
        notes: List[str] = []
        for source_path, group in group_by_source(units).items():
            contents = collapse_headers(group)
            # Reserve room for the note wrapper so every note fits on its own
            wrapper = self.count(format_note(source_path, [""], part=len(contents)))
            parts = split_by_budget(contents, max(budget - wrapper, 1), self.count)
            multiple = len(parts) > 1
            for i, part in enumerate(parts, 1):
                notes.append(format_note(source_path, part, part=i if multiple else None))

        needs_reduce = self.count(PASSAGE_SEPARATOR.join(notes)) > budget
        logger.debug(f"Post-processed {len(units)} units into {len(notes)} notes")
        return PostProcessed(notes=notes, needs_reduce=needs_reduce, token_budget=budget)

    def reduce(
        self,
        post_processed: PostProcessed,
        query: str,
        on_pass: Optional[Callable[[int, int], None]] = None,
    ) -> str:
        """
        Summarize notes until they fit the budget.

        Args:
            post_processed: Output of post_process
            query: The user question the summaries must preserve
            on_pass: Called with (pass number, passages produced) after each pass
        """
        if not post_processed.needs_reduce:
            return PASSAGE_SEPARATOR.join(post_processed.notes)

        budget = post_processed.token_budget
        contents = list(post_processed.notes)
        passes = 0
        while True:
            if passes >= self.max_passes:
                raise ReductionLimitError(
                    f"Context still exceeds {budget} tokens after {passes} reduce passes",
                    details={"budget": budget, "passes": passes},
                )
            groups = split_by_budget(contents, budget, self.count)
            template = self.initial_reduce_prompt if passes == 0 else self.reduce_prompt
            contents = [
                self.generator.invoke(
                    template.format(query=query, content=PASSAGE_SEPARATOR.join(group))
                )
                for group in groups
            ]
            passes += 1
            logger.debug(f"Reduce pass {passes}: {len(groups)} groups -> {len(contents)} passages")
            if on_pass:
                on_pass(passes, len(contents))
            if self.count(PASSAGE_SEPARATOR.join(contents)) <= budget:
                break
        logger.info(f"Reduced context in {passes} pass(es)")
        return PASSAGE_SEPARATOR.join(contents)

    def __call__(self, units: Sequence[ContentUnit], query: str) -> str:
        return self.reduce(self.post_process(units, query), query)

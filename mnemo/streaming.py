"""Translate cumulative pipeline updates into phase-tagged progress events."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .models import ProgressEvent


logger = logging.getLogger(__name__)


@dataclass
class RunUpdate:
    """
    A set of field-level changes emitted by a pipeline run.

    Known fields: ``retrieval_started`` (bool), ``documents`` (int),
    ``notes`` (int), ``needs_reduce`` (bool), ``reduce_pass`` (int),
    ``text_delta`` (str, appended rather than replaced).
    """
    changes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, **changes) -> "RunUpdate":
        return cls(changes=changes)


class ProgressBuilder:
    """Materialized state of a run, updated field by field."""

    def __init__(self):
        self.retrieval_started = False
        self.documents: Optional[int] = None
        self.notes: Optional[int] = None
        self.needs_reduce = False
        self.reduce_pass = 0
        self.streamed_output: List[str] = []

    def apply(self, update: RunUpdate) -> "ProgressBuilder":
        for name, value in update.changes.items():
            if name == "text_delta":
                self.streamed_output.append(value)
            elif name in ("retrieval_started", "documents", "notes", "needs_reduce", "reduce_pass"):
                setattr(self, name, value)
            else:
                logger.debug(f"Ignoring unknown run update field '{name}'")
        return self

    @property
    def generated_text(self) -> str:
        return "".join(self.streamed_output)


class StreamTranslator:
    """
    Single-pass translator from run updates to progress events.

    Yields exactly one ProgressEvent per update. A stop request (the shared
    ``stop_event``) is checked before each update is applied; once seen, a
    final 'stopped' event carrying the text generated so far is yielded, the
    flag is cleared and the upstream iterator is closed.
    """

    def __init__(self, stop_event: Optional[threading.Event] = None):
        self.stop_event = stop_event or threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    def translate(self, updates: Iterable[RunUpdate]) -> Iterator[ProgressEvent]:
        builder = ProgressBuilder()
        retrieving = False
        retrieved = False
        reducing = False
        generated_text = ""
        event = ProgressEvent(status="startup")

        upstream = iter(updates)
        try:
            for update in upstream:
                if self.stop_event.is_set():
                    self.stop_event.clear()
                    logger.info("Run stopped on request")
                    yield ProgressEvent(status="stopped", content=generated_text)
                    return

                builder.apply(update)
                if not retrieving and builder.retrieval_started:
                    retrieving = True
                    event = ProgressEvent(status="retrieving")
                elif not retrieved and builder.documents is not None:
                    retrieved = True
                    event = ProgressEvent(status="retrieving", content=builder.documents)
                elif not reducing and builder.needs_reduce:
                    reducing = True
                    event = ProgressEvent(status="reducing", content=builder.notes)
                elif builder.generated_text:
                    generated_text = builder.generated_text
                    event = ProgressEvent(status="generating", content=generated_text)
                # Nothing new: repeat the current phase so order never regresses
                yield event
        finally:
            close = getattr(upstream, "close", None)
            if close is not None:
                close()

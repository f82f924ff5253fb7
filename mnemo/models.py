"""Data models for Mnemo."""

import hashlib
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union


ProgressStatus = Literal["startup", "retrieving", "reducing", "generating", "stopped"]
IndexingMode = Literal["full", "by_file"]


def hash_string(text: str) -> str:
    """Stable content hash used as a content unit id."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass
class ContentUnit:
    """A content-addressed chunk of source text with heading metadata."""
    source_path: str
    text: str
    sequence_order: int = 0
    header_path: List[str] = field(default_factory=list)
    id: Optional[str] = None

    def __post_init__(self):
        if self.id is None:
            # Any edit to the text or breadcrumb yields a new id
            self.id = hash_string(self.source_path + "\n" + self.rendered_text)

    @property
    def rendered_text(self) -> str:
        """Header breadcrumb followed by the unit's text."""
        if not self.header_path:
            return self.text
        return "\n".join(self.header_path) + "\n" + self.text

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentUnit":
        return cls(
            source_path=data["source_path"],
            text=data["text"],
            sequence_order=int(data.get("sequence_order", 0)),
            header_path=list(data.get("header_path") or []),
            id=data.get("id"),
        )


@dataclass
class IndexRecord:
    """Ledger entry for one indexed content unit."""
    id: str
    source_path: str
    indexed_at: float


@dataclass
class SearchResult:
    """A single retrieval hit."""
    unit: ContentUnit
    score: float  # similarity, higher is better


@dataclass
class IndexingStats:
    """Running totals yielded by an indexing run."""
    num_added: int = 0
    num_skipped: int = 0
    num_deleted: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ProgressEvent:
    """One coalesced status update of a pipeline run."""
    status: ProgressStatus
    content: Optional[Union[str, int]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status}
        if self.content is not None:
            data["content"] = self.content
        return data

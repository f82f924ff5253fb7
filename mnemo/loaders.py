"""Markdown loading into content units with heading breadcrumbs."""

import logging
import re
from pathlib import Path
from typing import List, Sequence, Union

from langchain_community.document_loaders import DirectoryLoader, TextLoader
from langchain_core.documents import Document as LCDocument

from .models import ContentUnit


logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE = re.compile(r"^(```|~~~)")


def split_markdown(text: str, source_path: str, title: str) -> List[ContentUnit]:
    """
    Split a markdown document into paragraph units.

    Every unit carries the heading breadcrumb it sits under, starting with
    the document title. Fenced code blocks are kept in one piece.
    """
    units: List[ContentUnit] = []
    headings: List[tuple] = []  # (level, heading line)
    paragraph: List[str] = []
    in_fence = False

    def flush():
        body = "\n".join(paragraph).strip()
        paragraph.clear()
        if body:
            units.append(ContentUnit(
                source_path=source_path,
                text=body,
                sequence_order=len(units),
                header_path=[title] + [line for _, line in headings],
            ))

    for line in text.splitlines():
        if _FENCE.match(line.strip()):
            in_fence = not in_fence
            paragraph.append(line)
            continue
        if in_fence:
            paragraph.append(line)
            continue

        match = _HEADING.match(line)
        if match:
            flush()
            level = len(match.group(1))
            while headings and headings[-1][0] >= level:
                headings.pop()
            headings.append((level, line.strip()))
        elif not line.strip():
            flush()
        else:
            paragraph.append(line)
    flush()
    return units


def load_markdown_units(
    sources: Union[str, Sequence[str]],
    *,
    recursive: bool = True,
    autodetect_encoding: bool = True,
) -> List[ContentUnit]:
    """
    Load markdown/text files and directories into content units.

    Source paths are stored relative to the directory they were found in,
    so the same corpus indexed from a different working directory keeps its
    ids.
    """
    if isinstance(sources, str):
        sources = [sources]

    units: List[ContentUnit] = []
    for src in sources:
        path = Path(src)
        lc_docs: List[LCDocument] = []
        if path.is_dir():
            for pattern in ("**/*.md", "**/*.txt"):
                lc_docs.extend(
                    DirectoryLoader(
                        str(path),
                        glob=pattern,
                        recursive=recursive,
                        loader_cls=TextLoader,
                        loader_kwargs={"autodetect_encoding": autodetect_encoding},
                        silent_errors=True,
                    ).load()
                )
            root = path
        elif path.exists():
            lc_docs.extend(TextLoader(str(path), autodetect_encoding=autodetect_encoding).load())
            root = path.parent
        else:
            logger.warning(f"File not found: {src}")
            continue

        for doc in lc_docs:
            file_path = Path(doc.metadata.get("source", str(path)))
            try:
                source_path = file_path.relative_to(root).as_posix()
            except ValueError:
                source_path = file_path.as_posix()
            units.extend(split_markdown(doc.page_content or "", source_path, file_path.stem))

    logger.info(f"Loaded {len(units)} units from {len(sources)} source(s)")
    return units

"""Chunking of segments and splitting of translated chunks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .structures import Chunk, Segment

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_BUDGET = 4500
SEPARATOR_MARKER = "###TXTSEP###"
FALLBACK_MARKERS = ("###SEGSEP###", "§§§", "¤¤¤", "¶¶¶", "♦♦♦", "⚑⚑⚑")
MARKER_LINE = re.compile(
    r"^(###TXTSEP\d*###|" + "|".join(re.escape(marker) for marker in FALLBACK_MARKERS) + r")$",
    re.MULTILINE,
)


def choose_separator(segments: Sequence[Segment]) -> str:
    """Pick a separator whose marker does not occur in any segment text."""

    def unused(marker: str) -> bool:
        return not any(marker in segment.text for segment in segments)

    for marker in (SEPARATOR_MARKER, *FALLBACK_MARKERS):
        if unused(marker):
            return f"\n{marker}\n"

    counter = 0
    while not unused(f"###TXTSEP{counter}###"):
        counter += 1
    return f"\n###TXTSEP{counter}###\n"


def separator_markers(texts: Sequence[str]) -> List[str]:
    """Return the separator markers used in the given chunk texts, in first-seen order."""

    found: List[str] = []
    for text in texts:
        for marker in MARKER_LINE.findall(text):
            if marker not in found:
                found.append(marker)
    return found


class Chunker:
    """Aggregates segments into chunks within a character budget."""

    def __init__(self, budget: int = DEFAULT_CHUNK_BUDGET) -> None:
        self.budget = max(1, budget)

    def build(
        self,
        segments: Sequence[Segment],
        separator: Optional[str] = None,
    ) -> List[Chunk]:
        if not segments:
            return []

        separator = separator or choose_separator(segments)
        chunks: List[Chunk] = []
        chunk_segments: List[Segment] = []
        running_total = 0

        def flush() -> None:
            nonlocal chunk_segments, running_total
            if chunk_segments:
                chunks.append(_make_chunk(len(chunks), chunk_segments, separator))
            chunk_segments = []
            running_total = 0

        for segment in segments:
            size = len(segment.text)
            if size > self.budget:
                flush()
                logger.debug(
                    "Segment %d (%d chars) exceeds the chunk budget of %d; sending it alone.",
                    segment.segment_id,
                    size,
                    self.budget,
                )
                chunks.append(_make_chunk(len(chunks), [segment], separator))
                continue

            joined = size + (len(separator) if chunk_segments else 0)
            if running_total + joined > self.budget and chunk_segments:
                flush()
                joined = size

            chunk_segments.append(segment)
            running_total += joined

        flush()
        return chunks


def _make_chunk(chunk_id: int, segments: Sequence[Segment], separator: str) -> Chunk:
    return Chunk(
        chunk_id=chunk_id,
        segment_ids=[segment.segment_id for segment in segments],
        separator=separator,
        combined_text=separator.join(segment.text for segment in segments),
    )


@dataclass
class SplitOutcome:
    """Per-segment texts recovered from one translated chunk."""

    texts: List[str]
    translated: List[bool]
    strategy: str

    @property
    def degraded(self) -> bool:
        return not all(self.translated)


def _trim_empty_edges(parts: List[str]) -> List[str]:
    start, end = 0, len(parts)
    while start < end and not parts[start].strip():
        start += 1
    while end > start and not parts[end - 1].strip():
        end -= 1
    return parts[start:end]


def _split_parts(chunk: Chunk, translated: str) -> tuple[Optional[List[str]], str]:
    expected = len(chunk.segment_ids)
    if expected == 1:
        return [translated], "single"

    if chunk.separator in translated:
        parts = translated.split(chunk.separator)
        if len(parts) != expected:
            parts = _trim_empty_edges(parts)
        if len(parts) == expected:
            return parts, "strict"

    marker = re.compile(rf"\s*{re.escape(chunk.separator.strip())}\s*", re.IGNORECASE)
    if marker.search(translated):
        parts = marker.split(translated)
        if len(parts) != expected:
            parts = _trim_empty_edges(parts)
        if len(parts) == expected:
            return parts, "fuzzy"
        logger.warning(
            "Chunk %d: expected %d parts but the translation split into %d.",
            chunk.chunk_id,
            expected,
            len(parts),
        )
        return None, "fallback"

    logger.warning(
        "Chunk %d: separator not found in the translation; keeping the original text.",
        chunk.chunk_id,
    )
    return None, "fallback"


def split_translation(
    chunk: Chunk,
    translated: str,
    originals: Sequence[str],
) -> SplitOutcome:
    """Split a translated chunk back into per-segment texts.

    Splits on the exact separator first, then on the marker in any letter
    case and with any surrounding whitespace the provider introduced. When
    neither yields one part per segment, the original texts are returned for
    the whole chunk so that text never shifts onto the wrong segment. Empty
    parts fall back to the original text of their segment.
    """

    parts, strategy = _split_parts(chunk, translated)
    if parts is None:
        return SplitOutcome(
            texts=list(originals),
            translated=[False] * len(originals),
            strategy=strategy,
        )

    texts: List[str] = []
    flags: List[bool] = []
    for part, original in zip(parts, originals):
        cleaned = part.strip()
        texts.append(cleaned or original)
        flags.append(bool(cleaned))
    return SplitOutcome(texts=texts, translated=flags, strategy=strategy)

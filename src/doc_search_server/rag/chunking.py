"""Text chunking utilities for the ingestion pipeline."""

import re
from collections import deque
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200

# Coarsest boundary first. None splits between individual characters.
DEFAULT_SEPARATORS: tuple[re.Pattern[str] | None, ...] = (
    re.compile(r"\n\s*\n"),  # paragraphs
    re.compile(r"\n"),  # lines
    re.compile(r"(?<=[.!?])\s+"),  # sentences
    re.compile(r"\s+"),  # words
    None,  # characters
)


class ChunkData(BaseModel):
    """A chunk of text ready for embedding."""

    content: str
    chunk_index: int
    start_index: int
    end_index: int
    metadata: dict[str, Any] = Field(default_factory=dict)


def count_words(text: str) -> int:
    return len(text.split())


def _split_pieces(
    text: str,
    start: int,
    end: int,
    chunk_size: int,
    separators: tuple[re.Pattern[str] | None, ...],
) -> list[tuple[int, int]]:
    """Break ``text[start:end]`` into contiguous spans no longer than chunk_size.

    Uses the first separator that occurs in the span and recurses into
    oversized pieces with the finer separators. Separator text stays on
    the end of the piece before it, so the spans always tile the input.
    A span is only left oversized when no separator applies to it.
    """
    if end - start <= chunk_size:
        return [(start, end)]

    for i, separator in enumerate(separators):
        if separator is None:
            return [(pos, pos + 1) for pos in range(start, end)]

        cuts = [
            m.end() for m in separator.finditer(text, start, end) if start < m.end() < end
        ]
        if not cuts:
            continue

        pieces: list[tuple[int, int]] = []
        piece_start = start
        for cut in [*cuts, end]:
            pieces.extend(
                _split_pieces(text, piece_start, cut, chunk_size, separators[i + 1 :])
            )
            piece_start = cut
        return pieces

    return [(start, end)]


def _merge_pieces(
    pieces: list[tuple[int, int]], chunk_size: int, chunk_overlap: int
) -> list[tuple[int, int]]:
    """Greedily pack contiguous pieces into windows of at most chunk_size.

    When a window is emitted, its trailing pieces totalling at most
    chunk_overlap characters are carried into the next window.
    """
    spans: list[tuple[int, int]] = []
    window: deque[tuple[int, int]] = deque()
    total = 0

    for piece in pieces:
        length = piece[1] - piece[0]
        if window and total + length > chunk_size:
            spans.append((window[0][0], window[-1][1]))
            while window and (total > chunk_overlap or total + length > chunk_size):
                dropped = window.popleft()
                total -= dropped[1] - dropped[0]
        window.append(piece)
        total += length

    if window:
        spans.append((window[0][0], window[-1][1]))

    return spans


def split_text(
    text: str,
    metadata: dict[str, Any] | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    separators: tuple[re.Pattern[str] | None, ...] = DEFAULT_SEPARATORS,
) -> list[ChunkData]:
    """Split text into overlapping chunks, preferring the coarsest boundaries.

    Paragraph breaks are tried first, then line breaks, sentence ends,
    word boundaries and finally single characters. Every chunk is an
    exact slice ``text[start_index:end_index]`` and consecutive chunks
    share up to ``chunk_overlap`` characters of trailing context.

    Args:
        text: The text to chunk.
        metadata: Metadata copied onto every chunk. The splitter adds
            ``start_index`` and ``end_index``.
        chunk_size: Maximum characters per chunk.
        chunk_overlap: Maximum characters shared by consecutive chunks.
        separators: Boundary patterns, coarsest first.

    Returns:
        Chunks in text order with contiguous chunk_index values from 0.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0:
        raise ValueError("overlap must be non-negative")
    if chunk_overlap >= chunk_size:
        raise ValueError("overlap must be less than chunk_size to avoid infinite loops")

    if not text:
        return []

    pieces = _split_pieces(text, 0, len(text), chunk_size, separators)
    spans = _merge_pieces(pieces, chunk_size, chunk_overlap)

    base_metadata = metadata or {}
    chunks: list[ChunkData] = []
    for start, end in spans:
        content = text[start:end]
        if not content.strip():
            continue
        chunks.append(
            ChunkData(
                content=content,
                chunk_index=len(chunks),
                start_index=start,
                end_index=end,
                metadata={**base_metadata, "start_index": start, "end_index": end},
            )
        )

    return chunks

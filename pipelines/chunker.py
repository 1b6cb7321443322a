"""Text chunking for SiteFoundry.

Splits extracted page text into overlapping fixed-size character windows.
The output depends only on the input text and the (clamped) window settings,
so re-crawling unchanged content always produces the same chunk sequence.
"""

import math
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Sequence, Tuple

DEFAULT_CHUNK_SIZE = 1050
DEFAULT_CHUNK_OVERLAP = 150
MIN_CHUNK_SIZE = 300
MAX_CHUNK_SIZE = 2000
CHARS_PER_TOKEN = 4

EMPTY_PAGE_PLACEHOLDER = "No textual content extracted from this page."

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class TextChunk:
    """One window of page text."""
    chunk_index: int
    chunk_text: str
    token_estimate: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_text(text: str) -> str:
    """Collapse all whitespace runs to single spaces and trim."""
    return _WHITESPACE.sub(" ", text or "").strip()


def estimate_tokens(text: str) -> int:
    """Rough token count: ~4 characters per token, never below 1."""
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def clamp_chunk_params(chunk_size: int = DEFAULT_CHUNK_SIZE,
                       overlap: int = DEFAULT_CHUNK_OVERLAP) -> Tuple[int, int]:
    """Clamp window size to [300, 2000] and overlap to [0, size // 2]."""
    size = max(MIN_CHUNK_SIZE, min(chunk_size, MAX_CHUNK_SIZE))
    clamped_overlap = max(0, min(overlap, size // 2))
    return size, clamped_overlap


def chunk_text(text: str,
               chunk_size: int = DEFAULT_CHUNK_SIZE,
               overlap: int = DEFAULT_CHUNK_OVERLAP) -> List[TextChunk]:
    """Split ``text`` into overlapping windows.

    Args:
        text: Raw extracted text; whitespace is normalized first.
        chunk_size: Window length in characters, clamped to [300, 2000].
        overlap: Characters shared by consecutive windows, clamped to
            [0, chunk_size // 2].

    Returns:
        Chunks in increasing ``chunk_index`` order. Empty input yields a
        single placeholder chunk so the page still has a stored record.
    """
    size, overlap = clamp_chunk_params(chunk_size, overlap)
    normalized = normalize_text(text)

    if not normalized:
        return [TextChunk(0, EMPTY_PAGE_PLACEHOLDER, estimate_tokens(EMPTY_PAGE_PLACEHOLDER))]

    step = max(1, size - overlap)
    chunks: List[TextChunk] = []
    start = 0
    while start < len(normalized):
        window = normalized[start:start + size]
        chunks.append(TextChunk(len(chunks), window, estimate_tokens(window)))
        if start + size >= len(normalized):
            break
        start += step

    return chunks


def merge_chunks(chunks: Sequence[TextChunk], overlap: int) -> str:
    """Rebuild the normalized text from ``chunks`` by dropping each overlap region.

    ``overlap`` must be the clamped value used to produce the chunks.
    """
    if not chunks:
        return ""
    ordered = sorted(chunks, key=lambda c: c.chunk_index)
    parts = [ordered[0].chunk_text]
    parts.extend(chunk.chunk_text[overlap:] for chunk in ordered[1:])
    return "".join(parts)

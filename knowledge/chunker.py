"""
Fixed-window chunking.

Windows are CHUNK_SIZE characters long and start every
CHUNK_SIZE - CHUNK_OVERLAP characters, so consecutive windows share
CHUNK_OVERLAP characters. The last window may be shorter.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List

CHUNK_SIZE = 500
CHUNK_OVERLAP = 50


@dataclass(frozen=True)
class TextWindow:
    """A slice of a document before it is embedded."""
    text: str
    sequence_index: int
    start_offset: int
    end_offset: int


def expected_chunk_count(length: int, size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> int:
    """Number of windows produced for text of ``length`` characters."""
    if length <= size:
        return 1
    stride = size - overlap
    return -(-(length - overlap) // stride)


def split_text(text: str, size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[TextWindow]:
    """Split ``text`` into overlapping fixed-size windows."""
    if overlap < 0 or overlap >= size:
        raise ValueError("overlap must be >= 0 and smaller than size")
    if not text:
        return []

    stride = size - overlap
    windows: List[TextWindow] = []
    start = 0
    while True:
        end = min(start + size, len(text))
        windows.append(TextWindow(
            text=text[start:end],
            sequence_index=len(windows),
            start_offset=start,
            end_offset=end,
        ))
        if end >= len(text):
            break
        start += stride
    return windows

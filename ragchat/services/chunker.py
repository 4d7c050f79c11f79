"""
CHUNKER MODULE
==============

Splits knowledge text into overlapping segments before they are embedded.

A window of `segment_size` characters slides over the text. Before each cut we
look back over the last 100 characters of the window for a sentence end
(newline, 。 . ！ ? ；) and cut right after it; failing that, after a comma
(， ,); failing that, at the raw window edge. The next window starts `overlap`
characters before the previous cut so context carries across segments.

Pure functions, no I/O, no failure modes.
"""

from typing import List

STRONG_BOUNDARIES = frozenset("\n。.！?；")
SOFT_BOUNDARIES = frozenset("，,")

# How far back from the window edge we look for a boundary.
BOUNDARY_LOOKBACK = 100


def find_break_point(text: str, search_start: int, search_end: int) -> int:
    """
    Return the index just after the last boundary character in
    text[search_start:search_end], preferring sentence ends over commas.
    Returns search_end when the range holds no boundary.
    """
    search_start = max(search_start, 0)
    for boundaries in (STRONG_BOUNDARIES, SOFT_BOUNDARIES):
        for i in range(search_end - 1, search_start - 1, -1):
            if text[i] in boundaries:
                return i + 1
    return search_end


def split_text(text: str, segment_size: int = 500, overlap: int = 50) -> List[str]:
    """
    Split text into trimmed segments of at most segment_size characters.

    Text that already fits in one segment comes back as a single (trimmed)
    element. Consecutive segments share `overlap` characters of the source.
    An overlap of segment_size or more is clamped to segment_size - 1 so every
    window still advances and the end of the text is always covered.
    """
    overlap = max(0, min(overlap, segment_size - 1))

    if len(text) <= segment_size:
        return [text.strip()]

    segments: List[str] = []
    start = 0
    while start < len(text):
        end = min(start + segment_size, len(text))

        # Prefer cutting on a sentence / clause boundary near the window edge.
        if end < len(text):
            break_point = find_break_point(text, start + segment_size - BOUNDARY_LOOKBACK, end)
            if break_point > start:
                end = break_point

        segments.append(text[start:end].strip())
        if end >= len(text):
            break

        next_start = end - overlap
        if next_start <= start:
            # Boundary cut left no room to overlap, keep moving forward.
            next_start = end
        start = next_start

    return segments

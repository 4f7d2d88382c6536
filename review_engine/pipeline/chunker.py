"""Split a text or page sequence into overlapping ranges."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class ChunkRange:
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start


def make_chunks_by_count(
    sequence: Sequence[object] | str,
    chunk_count: int,
    overlap: int = 0,
) -> list[ChunkRange]:
    """Split ``sequence`` into ``chunk_count`` contiguous, overlapping ranges.

    Natural boundaries are spread evenly (``i * len // count``). Every range
    after the first then starts ``overlap`` units early, so adjacent ranges
    share exactly ``overlap`` units. The overlap is clamped to one less than
    the preceding natural chunk, so with two or more ranges none covers the
    whole sequence.

    ``chunk_count`` is clamped to ``[1, len(sequence)]`` so that no range is
    ever empty. An empty sequence yields the single range ``(0, 0)``.
    """
    total = len(sequence)
    if total == 0:
        return [ChunkRange(0, 0)]

    count = min(max(chunk_count, 1), total)
    overlap = max(overlap, 0)
    bounds = [i * total // count for i in range(count + 1)]

    ranges: list[ChunkRange] = []
    for i in range(count):
        start, end = bounds[i], bounds[i + 1]
        if i > 0:
            start = max(start - overlap, bounds[i - 1] + 1)
        ranges.append(ChunkRange(start, end))
    return ranges


def slice_ranges(
    sequence: Sequence[object] | str, ranges: Sequence[ChunkRange]
) -> list[Sequence[object] | str]:
    return [sequence[r.start : r.end] for r in ranges]

from __future__ import annotations

from typing import List, Tuple

from .models import Chunk


def parse_frames(frames_spec: str) -> List[int]:
    """
    Parse a simple framespec like:
      "0-99" or "0-99,120-200"
    into a sorted unique list of ints.
    """
    frames: List[int] = []
    for part in str(frames_spec).split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            a, b = part.split("-", 1)
            start = int(a)
            end = int(b)
            if end < start:
                start, end = end, start
            frames.extend(range(start, end + 1))
        else:
            frames.append(int(part))
    return sorted(set(frames))


def frame_range(frames_spec: str) -> Tuple[int, int]:
    frames = parse_frames(frames_spec)
    if not frames:
        raise ValueError(f"No frames parsed from spec: {frames_spec}")
    expected = frames[-1] - frames[0] + 1
    if len(frames) != expected:
        raise ValueError(f"Frame spec must describe one contiguous range: {frames_spec}")
    return frames[0], frames[-1]


def split_ranges(start: int, end: int, parts: int) -> List[Tuple[int, int]]:
    total = end - start + 1
    if parts <= 0:
        parts = 1
    if parts > total:
        parts = total

    base = total // parts
    rem = total % parts

    ranges: List[Tuple[int, int]] = []
    cur = start
    for i in range(parts):
        span = base + (1 if i < rem else 0)
        s = cur
        e = cur + span - 1
        ranges.append((s, e))
        cur = e + 1
    return ranges


def calc_chunks(start: int, end: int, chunk_count: int) -> Tuple[Chunk, ...]:
    """Split [start, end] into at most chunk_count contiguous chunks."""
    if end < start:
        raise ValueError(f"End frame ({end}) is before start frame ({start})")
    return tuple(Chunk(s, e) for s, e in split_ranges(start, end, chunk_count))


def chunks_by_size(start: int, end: int, chunk_size: int) -> Tuple[Chunk, ...]:
    if end < start:
        raise ValueError(f"End frame ({end}) is before start frame ({start})")
    if chunk_size <= 0:
        chunk_size = end - start + 1

    chunks: List[Chunk] = []
    cur = start
    while cur <= end:
        last = min(cur + chunk_size - 1, end)
        chunks.append(Chunk(cur, last))
        cur = last + 1
    return tuple(chunks)

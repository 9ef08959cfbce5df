"""
Chunk planning module for Marginalia.

Short documents become a single chunk. Longer ones ask the generation model
for semantic chunk boundaries, then repair the proposal deterministically so
every chunk fits the size ceiling.
"""

import json
import re
from collections import Counter
from typing import List, Optional, Tuple

from config import DEFAULT_CHUNK_SIZE, MAX_CHUNK_SIZE, MIN_CHUNK_SIZE
from errors import ChunkPlanningFailure

Span = Tuple[int, int]

# Hallucination heuristics. Tunable policy, not a guarantee.
OUT_OF_RANGE_FACTOR = 1.5
OUT_OF_RANGE_MIN_SLACK = 200
STANDARD_SIZE_STEP = 100
STANDARD_SIZE_MIN = 300

MAX_SPLIT_PASSES = 32

_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n")
_LINE_BREAK_RE = re.compile(r"\n")
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*\s+")

_PAIR_RE = re.compile(r'"char_start"\s*:\s*(-?\d+)\s*,\s*"char_end"\s*:\s*(-?\d+)')


def build_boundary_prompt(text: str, ceiling: int) -> str:
    return (
        "Split the following document into semantically coherent chunks for search indexing.\n"
        f"The document is {len(text)} characters long. Each chunk must be at most "
        f"{ceiling} characters.\n"
        'Return ONLY a JSON array of objects of the form {"char_start": <int>, "char_end": <int>} '
        "using zero-based character offsets into the document, in ascending order, without overlaps.\n"
        "Do NOT include summaries, titles, labels, explanations, or any other keys or text.\n\n"
        "Document:\n<<<\n"
        f"{text}\n"
        ">>>"
    )


def repair_boundary_response(raw: str) -> str:
    """Coerce a sloppy model answer into something `json.loads` accepts."""
    cleaned = re.sub(r"```(?:json)?", "", raw or "").strip()

    start = cleaned.find("[")
    end = cleaned.rfind("]")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    else:
        cleaned = "[" + ",".join(re.findall(r"\{[^{}]*\}", cleaned)) + "]"

    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = re.sub(r"char\s*_\s*(start|end)", r"char_\1", cleaned)
    cleaned = cleaned.replace("'", '"')
    cleaned = re.sub(r"([{,]\s*)(char_start|char_end)\s*:", r'\1"\2":', cleaned)
    # Missing key names: {12, 340}, {"char_start": 12, 340}, {12, "char_end": 340}
    cleaned = re.sub(
        r"\{\s*(-?\d+)\s*,\s*(-?\d+)\s*\}", r'{"char_start": \1, "char_end": \2}', cleaned
    )
    cleaned = re.sub(r'("char_start"\s*:\s*-?\d+\s*,\s*)(-?\d+)(\s*\})', r'\1"char_end": \2\3', cleaned)
    cleaned = re.sub(r'\{\s*(-?\d+)\s*,\s*("char_end")', r'{"char_start": \1, \2', cleaned)
    cleaned = re.sub(r",\s*([\]}])", r"\1", cleaned)
    return cleaned


def parse_boundaries(raw: str) -> List[Span]:
    """Parse a boundary proposal into `(start, end)` pairs."""
    repaired = repair_boundary_response(raw)
    try:
        data = json.loads(repaired)
    except json.JSONDecodeError:
        pairs = [(int(a), int(b)) for a, b in _PAIR_RE.findall(repaired)]
        if not pairs:
            raise ChunkPlanningFailure("Chunk boundary response is not valid JSON")
        return pairs

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ChunkPlanningFailure("Chunk boundary response is not a JSON array")

    spans: List[Span] = []
    for item in data:
        try:
            if isinstance(item, dict):
                spans.append((int(item["char_start"]), int(item["char_end"])))
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                spans.append((int(item[0]), int(item[1])))
        except (KeyError, TypeError, ValueError):
            continue
    return spans


def validate_boundaries(spans: List[Span], text_length: int) -> None:
    """Raise `ChunkPlanningFailure` for proposals that look hallucinated."""
    if not spans:
        raise ChunkPlanningFailure("No chunk boundaries in response")

    slack = max(OUT_OF_RANGE_MIN_SLACK, text_length * (OUT_OF_RANGE_FACTOR - 1))
    if all(end > text_length + slack for _, end in spans):
        raise ChunkPlanningFailure(
            f"All chunk ends are out of range for a {text_length}-character document"
        )

    sizes = [end - start for start, end in spans if end > start]
    rounded = Counter(
        size for size in sizes if size >= STANDARD_SIZE_MIN and size % STANDARD_SIZE_STEP == 0
    )
    if rounded:
        size, count = rounded.most_common(1)[0]
        if count >= 2 and count * 2 >= len(sizes):
            raise ChunkPlanningFailure(
                f"Chunk boundaries follow a standardized {size}-character pattern"
            )


def normalize_spans(spans: List[Span], text_length: int) -> List[Span]:
    """Clamp to bounds, sort, trim overlaps and drop empty spans."""
    clamped = []
    for start, end in spans:
        start = max(0, min(text_length, start))
        end = max(0, min(text_length, end))
        if end > start:
            clamped.append((start, end))
    clamped.sort()

    result: List[Span] = []
    prev_end = 0
    for start, end in clamped:
        start = max(start, prev_end)
        if end > start:
            result.append((start, end))
            prev_end = end
    return result


def _split_point(text: str, start: int, end: int) -> int:
    size = end - start
    mid = start + size // 2
    lo = start + size // 4
    hi = end - size // 4
    window = text[lo:hi]
    for pattern in (_PARAGRAPH_BREAK_RE, _LINE_BREAK_RE, _SENTENCE_END_RE):
        candidates = [lo + m.end() for m in pattern.finditer(window)]
        candidates = [c for c in candidates if start < c < end]
        if candidates:
            return min(candidates, key=lambda c: (abs(c - mid), c))
    return mid


def split_oversized(text: str, spans: List[Span], ceiling: int) -> List[Span]:
    """Split every span above `ceiling` at the best nearby break."""
    for _ in range(MAX_SPLIT_PASSES):
        if all(end - start <= ceiling for start, end in spans):
            break
        next_spans: List[Span] = []
        for start, end in spans:
            if end - start <= ceiling:
                next_spans.append((start, end))
                continue
            point = _split_point(text, start, end)
            next_spans.extend([(start, point), (point, end)])
        spans = [(s, e) for s, e in next_spans if e > s]

    # Anything still too large is cut at the ceiling.
    result: List[Span] = []
    for start, end in spans:
        while end - start > ceiling:
            result.append((start, start + ceiling))
            start += ceiling
        if end > start:
            result.append((start, end))
    return result


class ChunkPlanner:
    """Plans chunk spans over sanitized text."""

    def __init__(self, client, chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        Initialize the planner.

        Args:
            client: InferenceClient used for boundary proposals
            chunk_size: Maximum chunk size in characters
        """
        self.client = client
        self.chunk_size = max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, int(chunk_size)))

    def plan(self, text: str, ceiling: Optional[int] = None, path: str = "") -> List[Span]:
        """
        Plan chunk spans for `text`.

        Args:
            text: Sanitized document text
            ceiling: Size ceiling for this document (defaults to chunk_size,
                clamped to the same bounds)
            path: Document path, used for messages

        Returns:
            Ascending, non-overlapping `(start, end)` spans, each <= ceiling

        Raises:
            ChunkPlanningFailure: when boundaries cannot be obtained or look hallucinated
        """
        ceiling = max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, int(ceiling or self.chunk_size)))
        if not text or not text.strip():
            return []
        if len(text) <= ceiling:
            return [(0, len(text))]

        proposed = self._request_boundaries(text, ceiling, path)
        validate_boundaries(proposed, len(text))

        spans = normalize_spans(proposed, len(text))
        spans = split_oversized(text, spans, ceiling)
        spans = normalize_spans(spans, len(text))
        if not spans:
            raise ChunkPlanningFailure(f"No usable chunk boundaries for {path or 'document'}")
        return spans

    def _request_boundaries(self, text: str, ceiling: int, path: str) -> List[Span]:
        prompt = build_boundary_prompt(text, ceiling)
        result = self.client.generate(prompt, timeout=self.client.chunk_timeout(len(text)))
        if not result.ok:
            raise ChunkPlanningFailure(
                f"Chunk boundary request failed for {path or 'document'}: {result.error}"
            ) from result.error
        return parse_boundaries(result.value)

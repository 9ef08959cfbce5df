"""
Content sanitization for Marginalia.

Strips a markdown document down to the text worth embedding while keeping a
position map back to the original offsets, so chunk spans computed on the
sanitized text can be shown against the raw document.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

# Tag clusters: a line is tag-dominated when at least this share of its tokens
# are short #tags. Tag lines separated by up to TAG_CLUSTER_GAP blank lines are
# removed as one span.
TAG_TOKEN_MAX_LEN = 40
TAG_LINE_RATIO = 0.7
TAG_CLUSTER_GAP = 1

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\n.*?\n---[ \t]*(?:\n|\Z)", re.S)
_CODE_FENCE_RE = re.compile(r"(?s)(```|~~~).*?\1[^\n]*")
_URL_RE = re.compile(r"(?:https?|ftp)://[^\s)\]>]+|www\.[^\s)\]>]+")
_MEDIA_WIKI_RE = re.compile(r"!\[\[[^\]\n]*\]\]")
_MEDIA_MD_RE = re.compile(r"!\[[^\]\n]*\]\([^)\n]*\)")
_WIKI_LINK_RE = re.compile(r"\[\[([^\]|\n]+)(?:\|([^\]\n]+))?\]\]")
_MD_LINK_RE = re.compile(r"\[([^\]\n]*)\]\(([^)\n]*)\)")
_HTML_COMMENT_RE = re.compile(r"(?s)<!--.*?-->")
# Tags carry only name=value attributes; "a<b and c>d" is prose, not a tag.
_HTML_TAG_RE = re.compile(
    r"</?[A-Za-z][\w:-]*"
    r"(?:\s+[\w:-]+\s*=\s*(?:\"[^\"\n]*\"|'[^'\n]*'|[^\s\"'<>=]+))*"
    r"\s*/?>"
)
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_TAG_TOKEN_RE = re.compile(r"#[\w/\-]+")

_MD_HEADING_PREFIX_RE = re.compile(r"(?m)^[ \t]{0,3}#{1,6}[ \t]+")
_MD_BLOCKQUOTE_PREFIX_RE = re.compile(r"(?m)^[ \t]*>[ \t]?")
_MD_UNORDERED_PREFIX_RE = re.compile(r"(?m)^[ \t]*[-*+][ \t]+(?:\[[ xX]\][ \t]+)?")
_MD_ORDERED_PREFIX_RE = re.compile(r"(?m)^[ \t]*\d+[.)][ \t]+")
_MD_HRULE_LINE_RE = re.compile(r"(?m)^[ \t]*([-*_])(?:[ \t]*\1){2,}[ \t]*$")

_EMPHASIS_RES = [
    re.compile(re.escape(delim) + r"(?=\S)(.+?)(?<=\S)" + re.escape(delim))
    for delim in ("**", "__", "~~", "==")
] + [
    re.compile(r"(?<![*\w])\*(?=[^\s*])(.+?)(?<=[^\s*])\*(?![*\w])"),
    re.compile(r"(?<![_\w])_(?=[^\s_])(.+?)(?<=[^\s_])_(?![_\w])"),
]

_EXCESS_NEWLINES_RE = re.compile(r"\n(?:[ \t]*\n){2,}")


@dataclass
class SanitizedText:
    """Sanitized text plus the original offset of every character."""

    text: str
    position_map: List[int] = field(default_factory=list)
    original_length: int = 0

    def to_original(self, start: int, end: int) -> Tuple[int, int]:
        """Map a sanitized `[start, end)` span to original offsets."""
        limit = self.original_length
        if start >= end or start < 0 or start >= len(self.position_map):
            anchor = self.position_map[start] if 0 <= start < len(self.position_map) else limit
            anchor = min(anchor, limit)
            return anchor, anchor
        end = min(end, len(self.position_map))
        return min(self.position_map[start], limit), min(self.position_map[end - 1] + 1, limit)


def _mark(removed: bytearray, start: int, end: int) -> None:
    start = max(0, start)
    end = min(len(removed), end)
    if end > start:
        removed[start:end] = b"\x01" * (end - start)


def _mark_all(removed: bytearray, spans: Iterable[Tuple[int, int]]) -> None:
    for start, end in spans:
        _mark(removed, start, end)


def _is_tag_line(line: str) -> bool:
    tokens = line.split()
    if not tokens:
        return False
    tags = [t for t in tokens if len(t) <= TAG_TOKEN_MAX_LEN and _TAG_TOKEN_RE.fullmatch(t)]
    return len(tags) / len(tokens) >= TAG_LINE_RATIO


def tag_cluster_spans(text: str) -> List[Tuple[int, int]]:
    """Spans of tag-dominated lines, merging runs separated by small blank gaps."""
    spans: List[Tuple[int, int]] = []
    offset = 0
    run_start = None
    run_end = None
    gap = 0
    for line in text.splitlines(keepends=True):
        line_start, offset = offset, offset + len(line)
        if _is_tag_line(line):
            if run_start is None:
                run_start = line_start
            run_end = offset
            gap = 0
        elif not line.strip() and run_start is not None:
            gap += 1
            if gap > TAG_CLUSTER_GAP:
                spans.append((run_start, run_end))
                run_start = run_end = None
                gap = 0
        elif run_start is not None:
            spans.append((run_start, run_end))
            run_start = run_end = None
            gap = 0
    if run_start is not None:
        spans.append((run_start, run_end))
    return spans


def _removal_mask(text: str) -> bytearray:
    removed = bytearray(len(text))

    match = _FRONT_MATTER_RE.match(text)
    if match:
        _mark(removed, match.start(), match.end())

    _mark_all(removed, (m.span() for m in _CODE_FENCE_RE.finditer(text)))
    _mark_all(removed, (m.span() for m in _URL_RE.finditer(text)))

    # Links keep their visible label.
    for m in _WIKI_LINK_RE.finditer(text):
        label = 2 if m.group(2) else 1
        _mark(removed, m.start(), m.start(label))
        _mark(removed, m.end(label), m.end())
    for m in _MD_LINK_RE.finditer(text):
        _mark(removed, m.start(), m.start(1))
        _mark(removed, m.end(1), m.end())

    _mark_all(removed, (m.span() for m in _MEDIA_WIKI_RE.finditer(text)))
    _mark_all(removed, (m.span() for m in _MEDIA_MD_RE.finditer(text)))
    _mark_all(removed, (m.span() for m in _HTML_COMMENT_RE.finditer(text)))
    _mark_all(removed, (m.span() for m in _HTML_TAG_RE.finditer(text)))
    _mark_all(removed, (m.span() for m in _INLINE_CODE_RE.finditer(text)))
    _mark_all(removed, tag_cluster_spans(text))

    # Structural markers go, their text stays.
    for pat in (
        _MD_HEADING_PREFIX_RE,
        _MD_BLOCKQUOTE_PREFIX_RE,
        _MD_UNORDERED_PREFIX_RE,
        _MD_ORDERED_PREFIX_RE,
        _MD_HRULE_LINE_RE,
    ):
        _mark_all(removed, (m.span() for m in pat.finditer(text)))
    for pat in _EMPHASIS_RES:
        for m in pat.finditer(text):
            _mark(removed, m.start(), m.start(1))
            _mark(removed, m.end(1), m.end())

    return removed


def _collapse_newlines(chars: List[str], positions: List[int]) -> Tuple[List[str], List[int]]:
    joined = "".join(chars)
    drop = bytearray(len(chars))
    for m in _EXCESS_NEWLINES_RE.finditer(joined):
        # Keep the first and the last newline of the run.
        _mark(drop, m.start() + 1, m.end() - 1)
    if not any(drop):
        return chars, positions
    keep = [i for i in range(len(chars)) if not drop[i]]
    return [chars[i] for i in keep], [positions[i] for i in keep]


def sanitize(text: str) -> SanitizedText:
    """Return the embeddable text of `text` with its position map."""
    text = text or ""
    removed = _removal_mask(text)

    positions = [i for i in range(len(text)) if not removed[i]]
    chars = [text[i] for i in positions]
    chars, positions = _collapse_newlines(chars, positions)

    start, end = 0, len(chars)
    while start < end and chars[start].isspace():
        start += 1
    while end > start and chars[end - 1].isspace():
        end -= 1

    return SanitizedText(
        text="".join(chars[start:end]),
        position_map=positions[start:end],
        original_length=len(text),
    )

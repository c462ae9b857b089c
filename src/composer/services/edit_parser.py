"""Split an edit-style generation into the revised post and its change list.

The generator is asked to answer edits as::

    1. Revised post
    <post>

    2. Changes made
    - bullet
    - bullet

but the format is not guaranteed, so recognition is lenient and every path
falls back to treating the whole response as the post.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional


@dataclass(frozen=True)
class EditParseResult:
    content: str
    changes: Optional[List[str]] = None


_CONTENT_HEADERS = (
    re.compile(
        r"(?:the\s+|your\s+)?(?:revised|updated|edited|rewritten|improved|final|new)\s+"
        r"(?:linkedin\s+)?(?:post|version|draft)(?:\s*\(.*\))?"
    ),
    re.compile(
        r"here(?:'|’)?s\s+(?:the|your)\s+(?:revised|updated|edited|rewritten|improved|new)\s+"
        r"(?:linkedin\s+)?(?:post|version|draft)"
    ),
)

_CHANGES_HEADERS = (
    re.compile(r"(?:key\s+|summary\s+of\s+)?(?:changes|improvements|edits)(?:\s+made)?(?:\s+and\s+why)?(?:\s*\(.*\))?"),
    re.compile(r"what\s+(?:was\s+|i\s+|we\s+|i'?ve\s+|has\s+been\s+)?(?:improved|changed)(?:\s+and\s+why)?"),
    re.compile(r"why\s+(?:these\s+changes|this\s+works)"),
)

_NUMBER_PREFIX = re.compile(r"^\d+[.)]\s*")
_BARE_NUMBER = re.compile(r"^\s*(\d+)[.)]\s*$")
_BULLET_PREFIX = re.compile(r"^(?:[-*•]\s*|\d+[.)]\s*)")

# Blank line followed by a line that could be a changes header
_LOOSE_SPLIT = re.compile(r"\n\s*\n(?=([^\n]*)(?:\n|$))")
_INLINE_HEADER = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\*\*)?\s*(?:\d+[.)]\s*)?(?:here(?:'|’)?s\s+(?:the|your)\s+)?"
    r"(?:revised|updated|edited|rewritten|improved)\s+(?:linkedin\s+)?(?:post|version|draft)\s*:\s*(?:\*\*)?[ \t]*",
    re.IGNORECASE,
)


def _normalize_header(line: str) -> str:
    text = line.strip()
    text = re.sub(r"^#{1,6}\s*", "", text)
    text = text.strip("*_ ").strip()
    text = _NUMBER_PREFIX.sub("", text)
    text = re.sub(r"^#{1,6}\s*", "", text)
    text = text.strip("*_ ").strip()
    text = text.rstrip(":").strip().strip("*_ ").rstrip(":").strip()
    return text.lower()


def _matches(patterns, line: str) -> bool:
    normalized = _normalize_header(line)
    if not normalized:
        return False
    return any(p.fullmatch(normalized) for p in patterns)


def _is_content_header(line: str) -> bool:
    bare = _BARE_NUMBER.match(line)
    if bare:
        return bare.group(1) == "1"
    return _matches(_CONTENT_HEADERS, line)


def _is_changes_header(line: str) -> bool:
    bare = _BARE_NUMBER.match(line)
    if bare:
        return bare.group(1) == "2"
    return _matches(_CHANGES_HEADERS, line)


def _bullet(line: str) -> str:
    return _BULLET_PREFIX.sub("", line.strip()).strip()


def _strip_leading_header(content: str) -> str:
    lines = content.split("\n")
    while lines:
        first = lines[0]
        if not first.strip() or _is_content_header(first):
            lines.pop(0)
            continue
        stripped = _INLINE_HEADER.sub("", first, count=1)
        if stripped == first:
            break
        lines[0] = stripped
    return "\n".join(lines).strip()


def _loose_split(text: str) -> Optional[EditParseResult]:
    for match in _LOOSE_SPLIT.finditer(text):
        header = match.group(1)
        if not _is_changes_header(header):
            continue
        head = text[: match.start()]
        tail_start = match.end() + len(header)
        changes = [b for b in (_bullet(line) for line in text[tail_start:].split("\n")) if b]
        return EditParseResult(content=head, changes=changes or None)
    return None


def parse_edit_response(raw_text: Any) -> EditParseResult:
    text = raw_text if isinstance(raw_text, str) else str(raw_text or "")
    text = text.replace("\r\n", "\n")

    content_lines: List[str] = []
    changes: List[str] = []
    section: Optional[str] = None

    for line in text.split("\n"):
        if _is_content_header(line):
            section = "content"
            continue
        if _is_changes_header(line):
            section = "changes"
            continue
        if section == "content":
            content_lines.append(line)
        elif section == "changes" and line.strip():
            item = _bullet(line)
            if item:
                changes.append(item)

    content = "\n".join(content_lines)
    if not content.strip():
        split = _loose_split(text)
        if split is not None:
            return EditParseResult(content=_strip_leading_header(split.content), changes=split.changes)
        return EditParseResult(content=_strip_leading_header(text), changes=None)

    return EditParseResult(content=_strip_leading_header(content), changes=changes or None)

"""Pure operations over the draft version tree.

Drafts are immutable values: every operation returns a new :class:`Draft`
(or the same object when nothing changes) so callers decide how updates are
propagated. History is append-only; reverting only moves the
``current_version`` pointer.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import replace
from datetime import UTC, datetime
from typing import Iterable, List, Optional

from ..domain.drafts import Draft, DraftVersion, InvalidDraftContent


GENERIC_TITLES = (
    "Written the LinkedIn post",
    "Drafted your LinkedIn post",
    "Prepared your LinkedIn post",
    "Composed the LinkedIn post",
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _require_content(content: str) -> None:
    if not isinstance(content, str) or not content.strip():
        raise InvalidDraftContent("draft content must be non-empty")


def draft_id_for(source_message_id: str) -> str:
    return f"draft-{source_message_id}"


def create_draft(source_message_id: str, content: str, timestamp: Optional[datetime] = None) -> Draft:
    _require_content(content)
    ts = timestamp or _utc_now()
    first = DraftVersion(version=1, content=content, created_at=ts)
    return Draft(
        id=draft_id_for(source_message_id),
        source_message_id=source_message_id,
        content=content,
        current_version=1,
        created_at=ts,
        versions=(first,),
    )


def create_version(
    draft: Draft,
    new_content: str,
    edit_instruction: Optional[str],
    changes: Optional[Iterable[str]] = None,
    timestamp: Optional[datetime] = None,
) -> Draft:
    """Append a version and make it current.

    The number is one past the highest existing version, which equals
    ``current_version + 1`` unless the draft was reverted; in that case the
    new version branches from the reverted-to version (``parent_version``).
    """

    _require_content(new_content)
    number = max(draft.version_numbers(), default=0) + 1
    version = DraftVersion(
        version=number,
        content=new_content,
        created_at=timestamp or _utc_now(),
        changes=tuple(changes) if changes else None,
        edit_instruction=edit_instruction,
        parent_version=draft.current_version,
    )
    return replace(
        draft,
        content=new_content,
        current_version=number,
        versions=draft.versions + (version,),
    )


def get_version(draft: Draft, version: int) -> Optional[DraftVersion]:
    for v in draft.versions:
        if v.version == version:
            return v
    return None


def revert_to_version(draft: Draft, version: int) -> Draft:
    target = get_version(draft, version)
    if target is None:
        return draft
    return replace(draft, content=target.content, current_version=version)


def set_version_external_id(draft: Draft, version: int, external_id: str) -> Draft:
    if get_version(draft, version) is None:
        return draft
    versions = tuple(
        replace(v, external_id=external_id) if v.version == version else v for v in draft.versions
    )
    updated = replace(draft, versions=versions)
    if version == 1 and draft.external_id is None:
        updated = replace(updated, external_id=external_id)
    return updated


def diff_versions(draft: Draft, from_version: int, to_version: int) -> Optional[List[str]]:
    older = get_version(draft, from_version)
    newer = get_version(draft, to_version)
    if older is None or newer is None:
        return None
    return list(
        difflib.unified_diff(
            older.content.splitlines(),
            newer.content.splitlines(),
            fromfile=f"v{from_version}",
            tofile=f"v{to_version}",
            lineterm="",
        )
    )


def has_multiple_versions(draft: Draft) -> bool:
    return len(draft.versions) > 1


def version_summary(draft: Draft) -> str:
    if len(draft.versions) == 1:
        return "Original"
    return f"v{draft.current_version} of {len(draft.versions)}"


def _stable_index(key: str, mod: int) -> int:
    total = 0
    for ch in key:
        total = (total + ord(ch)) % 9973
    return total % mod


_BULLET_RE = re.compile(r"^\s*(?:[-*•]\s*(.+)|\d+\.\s*(.+))", re.MULTILINE)


def draft_title(draft: Draft, version: Optional[int] = None) -> str:
    """Readable label for a draft version in the transcript."""

    target = version if version is not None else draft.current_version
    if target == 1:
        return GENERIC_TITLES[_stable_index(draft.id, len(GENERIC_TITLES))]

    found = get_version(draft, target)
    content = found.content if found else draft.content
    match = _BULLET_RE.search(content)
    if match:
        bullet = (match.group(1) or match.group(2) or "").strip()
        return re.sub(r"[`*_#]", "", bullet).strip() or "Edited the post"

    first_line = next((line for line in content.splitlines() if line.strip()), "")
    cleaned = re.sub(r"^[-*>\s]+", "", first_line)
    cleaned = re.sub(r"[`*_#]", "", cleaned).strip()
    return cleaned or "Edited the post"


def check_invariants(draft: Draft) -> List[str]:
    problems: List[str] = []
    numbers = draft.version_numbers()
    if numbers != list(range(1, len(numbers) + 1)):
        problems.append("version numbers are not contiguous from 1")
    if len(set(numbers)) != len(numbers):
        problems.append("duplicate version numbers")
    current = get_version(draft, draft.current_version)
    if current is None:
        problems.append("current_version does not exist")
    elif current.content != draft.content:
        problems.append("content does not match current version")
    return problems

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from src.composer.domain.drafts import InvalidDraftContent
from src.composer.services import draft_versions as dv


TS = datetime(2025, 1, 1, tzinfo=UTC)


def _draft_with_versions(*contents: str):
    draft = dv.create_draft("assistant-1", contents[0], TS)
    for idx, content in enumerate(contents[1:], start=2):
        draft = dv.create_version(draft, content, f"edit {idx}", timestamp=TS)
    return draft


def test_create_draft_builds_single_version():
    draft = dv.create_draft("assistant-1", "First post", TS)
    assert draft.id == "draft-assistant-1"
    assert draft.current_version == 1
    assert draft.version_numbers() == [1]
    assert draft.versions[0].content == "First post"
    assert dv.check_invariants(draft) == []


@pytest.mark.parametrize("content", ["", "   ", "\n\t"])
def test_create_draft_rejects_blank_content(content):
    with pytest.raises(InvalidDraftContent):
        dv.create_draft("m", content)


def test_create_version_is_pure_and_contiguous():
    original = dv.create_draft("m", "v1", TS)
    updated = dv.create_version(original, "v2", "shorter", ["cut intro"], TS)

    assert original.current_version == 1
    assert len(original.versions) == 1
    assert updated.current_version == 2
    assert updated.content == "v2"
    assert updated.versions[-1].changes == ("cut intro",)
    assert updated.versions[-1].edit_instruction == "shorter"
    assert updated.versions[-1].parent_version == 1
    assert dv.check_invariants(updated) == []


def test_current_version_is_max_for_built_drafts():
    draft = _draft_with_versions("a", "b", "c", "d")
    assert draft.current_version == max(draft.version_numbers())
    assert draft.version_numbers() == [1, 2, 3, 4]


def test_revert_moves_pointer_without_deleting_history():
    draft = _draft_with_versions("a", "b", "c")
    reverted = dv.revert_to_version(draft, 1)
    assert reverted.current_version == 1
    assert reverted.content == "a"
    assert reverted.version_numbers() == [1, 2, 3]
    assert dv.check_invariants(reverted) == []


def test_revert_to_missing_version_returns_same_object():
    draft = _draft_with_versions("a", "b")
    assert dv.revert_to_version(draft, 7) is draft
    assert dv.revert_to_version(draft, 0) is draft


def test_version_after_revert_never_reuses_a_number():
    draft = dv.revert_to_version(_draft_with_versions("a", "b", "c"), 1)
    branched = dv.create_version(draft, "d", "branch", timestamp=TS)
    assert branched.version_numbers() == [1, 2, 3, 4]
    assert branched.current_version == 4
    assert branched.versions[-1].parent_version == 1
    assert dv.check_invariants(branched) == []


def test_get_version_and_missing():
    draft = _draft_with_versions("a", "b")
    assert dv.get_version(draft, 2).content == "b"
    assert dv.get_version(draft, 3) is None


def test_diff_versions_uses_unified_format():
    draft = _draft_with_versions("line one\nline two", "line one\nline 2")
    diff = dv.diff_versions(draft, 1, 2)
    assert diff[0] == "--- v1"
    assert diff[1] == "+++ v2"
    assert "-line two" in diff
    assert "+line 2" in diff
    assert dv.diff_versions(draft, 1, 5) is None


def test_summary_and_multiple_versions():
    single = dv.create_draft("m", "only", TS)
    assert dv.version_summary(single) == "Original"
    assert not dv.has_multiple_versions(single)

    multi = dv.revert_to_version(_draft_with_versions("a", "b", "c"), 2)
    assert dv.version_summary(multi) == "v2 of 3"
    assert dv.has_multiple_versions(multi)


def test_draft_title_generic_then_from_content():
    draft = _draft_with_versions("Original body", "- Tightened the **hook**\n- other", "Plain first line\nsecond")
    assert dv.draft_title(draft, 1) in dv.GENERIC_TITLES
    assert dv.draft_title(draft, 1) == dv.draft_title(draft, 1)
    assert dv.draft_title(draft, 2) == "Tightened the hook"
    assert dv.draft_title(draft, 3) == "Plain first line"


def test_set_version_external_id_marks_draft_on_first_version():
    draft = _draft_with_versions("a", "b")
    marked = dv.set_version_external_id(draft, 1, "ext-1")
    assert marked.external_id == "ext-1"
    assert marked.versions[0].external_id == "ext-1"
    assert dv.set_version_external_id(draft, 9, "nope") is draft


def test_check_invariants_reports_mismatched_content():
    from dataclasses import replace

    draft = _draft_with_versions("a", "b")
    broken = replace(draft, content="something else")
    assert "content does not match current version" in dv.check_invariants(broken)

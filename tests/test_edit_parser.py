from __future__ import annotations

import pytest

from src.composer.services.edit_parser import parse_edit_response


def test_numbered_sections_split_content_and_changes():
    raw = "1. Revised post\nHello there\n\n2. Changes made\n- tightened the hook\n- added emoji"
    result = parse_edit_response(raw)
    assert result.content == "Hello there"
    assert result.changes == ["tightened the hook", "added emoji"]


def test_markdown_headers_and_synonyms():
    raw = (
        "## **Here's the updated version:**\n"
        "We shipped it.\n"
        "  Indented line stays.\n"
        "\n"
        "### What was improved\n"
        "* Stronger opening\n"
        "• Removed filler\n"
        "3. Added a question\n"
    )
    result = parse_edit_response(raw)
    assert result.content == "We shipped it.\n  Indented line stays."
    assert result.changes == ["Stronger opening", "Removed filler", "Added a question"]


def test_bare_numbered_headers():
    raw = "1.\nPost body\n\n2.\n- one change"
    result = parse_edit_response(raw)
    assert result.content == "Post body"
    assert result.changes == ["one change"]


def test_loose_split_when_only_changes_header_present():
    raw = "Great post body here.\nSecond line.\n\nChanges made:\n- shorter hook\n- fewer hashtags"
    result = parse_edit_response(raw)
    assert result.content == "Great post body here.\nSecond line."
    assert result.changes == ["shorter hook", "fewer hashtags"]


def test_plain_text_is_all_content():
    raw = "Just a post.\n\nWith two paragraphs."
    result = parse_edit_response(raw)
    assert result.content == raw
    assert result.changes is None


def test_inline_header_prefix_is_stripped():
    result = parse_edit_response("Revised post: Short and sweet.")
    assert result.content == "Short and sweet."


@pytest.mark.parametrize("value", [None, 42, "", "\n\n"])
def test_total_on_odd_input(value):
    result = parse_edit_response(value)
    assert isinstance(result.content, str)


@pytest.mark.parametrize(
    "raw",
    [
        "1. Revised post\nHello there\n\n2. Changes made\n- tightened the hook",
        "**Updated post**\nLine A\nLine B\n\n**Improvements**\n- x",
        "Body only\n\nKey changes:\n- y",
        "No headers at all.",
    ],
)
def test_reparsing_extracted_content_is_stable(raw):
    first = parse_edit_response(raw)
    assert parse_edit_response(first.content).content == first.content


def test_crlf_input_is_normalized():
    raw = "1. Revised post\r\nHi\r\n\r\n2. Changes made\r\n- a"
    result = parse_edit_response(raw)
    assert result.content == "Hi"
    assert result.changes == ["a"]

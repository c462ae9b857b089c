from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class RangeEditRequest:
    instruction: str
    selected_text: str
    span: Optional[Tuple[int, int]] = None

    def to_prompt(self) -> str:
        return (
            f'Edit the following selected text and rewrite the whole post: "{self.selected_text}"\n\n'
            f"Instruction: {self.instruction}\n\n"
            "Please provide the full updated post content."
        )

    def display_text(self) -> str:
        preview = self.selected_text if len(self.selected_text) <= 100 else self.selected_text[:100] + "..."
        return f'{self.instruction}\n\n> "{preview}"'


def locate_span(content: str, selected_text: str) -> Optional[Tuple[int, int]]:
    if not selected_text:
        return None
    start = (content or "").find(selected_text)
    if start == -1:
        return None
    return start, start + len(selected_text)


def build_range_edit_request(content: str, selected_text: str, instruction: str) -> RangeEditRequest:
    """Scope an edit to ``selected_text`` inside the displayed draft.

    The span is only used to highlight the selection; when the text cannot be
    found verbatim the request is still issued without one.
    """

    return RangeEditRequest(
        instruction=instruction.strip(),
        selected_text=selected_text,
        span=locate_span(content, selected_text),
    )

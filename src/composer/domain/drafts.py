from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


class InvalidDraftContent(ValueError):
    """Raised when a draft or version would be created from empty text."""


class DraftNotFound(KeyError):
    pass


@dataclass(frozen=True)
class DraftVersion:
    version: int
    content: str
    created_at: datetime
    changes: Optional[Tuple[str, ...]] = None
    edit_instruction: Optional[str] = None
    parent_version: Optional[int] = None
    external_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "content": self.content,
            "created_at": _isoformat(self.created_at),
            "changes": list(self.changes) if self.changes else None,
            "edit_instruction": self.edit_instruction,
            "parent_version": self.parent_version,
            "external_id": self.external_id,
        }


@dataclass(frozen=True)
class Draft:
    id: str
    source_message_id: str
    content: str
    current_version: int
    created_at: datetime
    versions: Tuple[DraftVersion, ...] = field(default_factory=tuple)
    title: Optional[str] = None
    external_id: Optional[str] = None

    def version_numbers(self) -> List[int]:
        return [v.version for v in self.versions]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_message_id": self.source_message_id,
            "content": self.content,
            "current_version": self.current_version,
            "created_at": _isoformat(self.created_at),
            "title": self.title,
            "external_id": self.external_id,
            "versions": [v.as_dict() for v in self.versions],
        }


def _isoformat(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")

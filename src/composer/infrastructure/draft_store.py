from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional

from ..domain.drafts import Draft, DraftNotFound
from ..services import draft_versions


class DraftRegistry:
    """Holds the drafts of a single conversation in creation order.

    The pure functions in :mod:`draft_versions` produce the new values; this
    class only swaps them in and tracks which draft the panel is showing.
    """

    def __init__(self) -> None:
        self._drafts: Dict[str, Draft] = {}
        self._order: List[str] = []
        self._active_id: Optional[str] = None
        self._lock = RLock()

    def _put(self, draft: Draft) -> Draft:
        if draft.id not in self._drafts:
            self._order.append(draft.id)
        self._drafts[draft.id] = draft
        return draft

    def create(self, source_message_id: str, content: str, timestamp: Optional[datetime] = None) -> Draft:
        with self._lock:
            draft = draft_versions.create_draft(source_message_id, content, timestamp)
            self._active_id = draft.id
            return self._put(draft)

    def apply_edit(
        self,
        draft_id: str,
        content: str,
        instruction: Optional[str],
        changes: Optional[Iterable[str]] = None,
        timestamp: Optional[datetime] = None,
    ) -> Draft:
        with self._lock:
            current = self.get(draft_id)
            if current is None:
                raise DraftNotFound(draft_id)
            updated = draft_versions.create_version(current, content, instruction, changes, timestamp)
            self._active_id = updated.id
            return self._put(updated)

    def revert(self, draft_id: str, version: int) -> Draft:
        with self._lock:
            current = self.get(draft_id)
            if current is None:
                raise DraftNotFound(draft_id)
            return self._put(draft_versions.revert_to_version(current, version))

    def mark_persisted(self, draft_id: str, version: int, external_id: str) -> Optional[Draft]:
        with self._lock:
            current = self.get(draft_id)
            if current is None:
                return None
            return self._put(draft_versions.set_version_external_id(current, version, external_id))

    def select(self, draft_id: str) -> Draft:
        with self._lock:
            current = self.get(draft_id)
            if current is None:
                raise DraftNotFound(draft_id)
            self._active_id = draft_id
            return current

    def get(self, draft_id: str) -> Optional[Draft]:
        with self._lock:
            return self._drafts.get(draft_id)

    def latest(self) -> Optional[Draft]:
        with self._lock:
            if not self._order:
                return None
            return self._drafts[self._order[-1]]

    def active(self) -> Optional[Draft]:
        with self._lock:
            if self._active_id and self._active_id in self._drafts:
                return self._drafts[self._active_id]
            return self.latest()

    def list(self) -> List[Draft]:
        with self._lock:
            return [self._drafts[did] for did in self._order]

    def clear(self) -> None:
        with self._lock:
            self._drafts.clear()
            self._order.clear()
            self._active_id = None

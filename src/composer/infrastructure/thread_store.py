from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import logging
import os
import uuid

from ..domain.chat_models import ChatMessage, Thread
from ..domain.drafts import Draft
from .events import DRAFT_VERSION_SAVED, MESSAGE_SAVED, THREAD_CREATED, publish_event

logger = logging.getLogger(__name__)


class ThreadStore(Protocol):
    def create_thread(self, title: Optional[str] = None, user_id: Optional[str] = None, organization_id: Optional[str] = None) -> Thread: ...

    def get_thread(self, thread_id: str) -> Optional[Thread]: ...

    def list_threads(self, limit: int = 20) -> List[Thread]: ...

    def list_messages(self, thread_id: str) -> List[ChatMessage]: ...

    def save_message(self, thread_id: str, message: ChatMessage) -> ChatMessage: ...

    def delete_message(self, thread_id: str, message_id: str) -> bool: ...

    def clear_messages(self, thread_id: str) -> None: ...

    def save_draft_version(self, thread_id: str, draft: Draft, version: int) -> Optional[str]: ...

    def list_draft_versions(self, thread_id: str) -> List[Dict[str, Any]]: ...


@dataclass
class _Thread:
    thread_id: str
    title: str
    created_at: str
    updated_at: str
    user_id: Optional[str]
    organization_id: Optional[str]


@dataclass
class _ThreadData:
    messages: List[ChatMessage] = field(default_factory=list)
    draft_versions: List[Dict[str, Any]] = field(default_factory=list)


class InMemoryThreadStore:
    def __init__(self) -> None:
        self._threads: Dict[str, _Thread] = {}
        self._data: Dict[str, _ThreadData] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _thread_model(self, thread: _Thread) -> Thread:
        return Thread(**thread.__dict__)

    def _touch(self, thread_id: str) -> None:
        self._threads[thread_id].updated_at = self._now_iso()

    def _require(self, thread_id: str) -> _ThreadData:
        if thread_id not in self._threads:
            raise KeyError("Thread not found")
        return self._data[thread_id]

    def create_thread(
        self,
        title: Optional[str] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Thread:
        with self._lock:
            tid = uuid.uuid4().hex
            now = self._now_iso()
            thread = _Thread(
                thread_id=tid,
                title=title or "New post",
                created_at=now,
                updated_at=now,
                user_id=user_id,
                organization_id=organization_id,
            )
            self._threads[tid] = thread
            self._data[tid] = _ThreadData()
            model = self._thread_model(thread)
        publish_event(THREAD_CREATED, {"thread_id": tid})
        return model

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        with self._lock:
            thread = self._threads.get(thread_id)
            if not thread:
                return None
            return self._thread_model(thread)

    def list_threads(self, limit: int = 20) -> List[Thread]:
        with self._lock:
            threads = [self._thread_model(t) for t in self._threads.values()]
            threads.sort(key=lambda t: t.updated_at, reverse=True)
            return threads[: max(0, limit)]

    def list_messages(self, thread_id: str) -> List[ChatMessage]:
        with self._lock:
            data = self._data.get(thread_id)
            if data is None:
                return []
            return [m.model_copy() for m in data.messages]

    def save_message(self, thread_id: str, message: ChatMessage) -> ChatMessage:
        """Insert ``message`` or replace the stored copy with the same id."""
        with self._lock:
            data = self._require(thread_id)
            stored = message.model_copy()
            for idx, existing in enumerate(data.messages):
                if existing.message_id == message.message_id:
                    data.messages[idx] = stored
                    break
            else:
                data.messages.append(stored)
            self._touch(thread_id)
        publish_event(
            MESSAGE_SAVED,
            {"thread_id": thread_id, "message_id": message.message_id, "role": message.role},
        )
        return stored

    def delete_message(self, thread_id: str, message_id: str) -> bool:
        with self._lock:
            data = self._data.get(thread_id)
            if data is None:
                return False
            before = len(data.messages)
            data.messages = [m for m in data.messages if m.message_id != message_id]
            return len(data.messages) != before

    def clear_messages(self, thread_id: str) -> None:
        with self._lock:
            data = self._data.get(thread_id)
            if data is not None:
                data.messages.clear()

    def save_draft_version(self, thread_id: str, draft: Draft, version: int) -> Optional[str]:
        with self._lock:
            data = self._require(thread_id)
            found = next((v for v in draft.versions if v.version == version), None)
            if found is None:
                logger.warning("draft_version_missing", extra={"draft_id": draft.id, "version": version})
                return None
            external_id = uuid.uuid4().hex
            record = found.as_dict()
            record.update({"external_id": external_id, "draft_id": draft.id, "thread_id": thread_id})
            data.draft_versions.append(record)
            self._touch(thread_id)
        publish_event(
            DRAFT_VERSION_SAVED,
            {"thread_id": thread_id, "draft_id": draft.id, "version": version, "external_id": external_id},
        )
        return external_id

    def list_draft_versions(self, thread_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            data = self._data.get(thread_id)
            if data is None:
                return []
            return [dict(r) for r in data.draft_versions]


_store: ThreadStore | None = None


def get_thread_store() -> ThreadStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("COMPOSER_THREAD_STORE_IMPL", "memory").lower()
    if impl != "memory":
        logger.warning("Unsupported thread store impl=%s; using in-memory store", impl)
    _store = InMemoryThreadStore()
    return _store


def reset_thread_store() -> None:
    global _store
    _store = None

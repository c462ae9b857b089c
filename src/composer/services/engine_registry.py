from __future__ import annotations

from threading import RLock
from typing import Dict, Optional

from ..domain.chat_models import Thread
from ..infrastructure.thread_store import ThreadStore, get_thread_store
from .chat_ai import LLMGenerationSource, detect_user_intent
from .chat_engine import ConversationEngine, GenerationSource
from .context_supplier import ContextSupplier, get_context_supplier
from .response_classifier import ResponseClassifier


class EngineRegistry:
    """One :class:`ConversationEngine` per thread, built on first use."""

    def __init__(
        self,
        store: Optional[ThreadStore] = None,
        generator: Optional[GenerationSource] = None,
        classifier: Optional[ResponseClassifier] = None,
        context_supplier: Optional[ContextSupplier] = None,
    ) -> None:
        self._store = store
        self._generator = generator
        self._classifier = classifier
        self._context_supplier = context_supplier
        self._engines: Dict[str, ConversationEngine] = {}
        self._lock = RLock()

    @property
    def store(self) -> ThreadStore:
        if self._store is None:
            self._store = get_thread_store()
        return self._store

    def _build(self, thread: Thread) -> ConversationEngine:
        if self._generator is None:
            self._generator = LLMGenerationSource()
        if self._classifier is None:
            self._classifier = ResponseClassifier()
        if self._context_supplier is None:
            self._context_supplier = get_context_supplier()
        engine = ConversationEngine(
            self._generator,
            self._classifier,
            persistence=self.store,
            context_supplier=self._context_supplier,
            intent_detector=detect_user_intent,
            thread_id=thread.thread_id,
            user_id=thread.user_id,
            organization_id=thread.organization_id,
        )
        engine.messages = self.store.list_messages(thread.thread_id)
        return engine

    def get(self, thread_id: str) -> Optional[ConversationEngine]:
        with self._lock:
            engine = self._engines.get(thread_id)
            if engine is not None:
                return engine
            thread = self.store.get_thread(thread_id)
            if thread is None:
                return None
            engine = self._build(thread)
            self._engines[thread_id] = engine
            return engine

    def reset(self) -> None:
        with self._lock:
            self._engines.clear()


_registry: Optional[EngineRegistry] = None


def get_engine_registry() -> EngineRegistry:
    global _registry
    if _registry is None:
        _registry = EngineRegistry()
    return _registry


def set_engine_registry(registry: Optional[EngineRegistry]) -> None:
    global _registry
    _registry = registry

"""Conversation engine: one user turn in, one routed assistant turn out.

``ConversationEngine.send_message`` ties the pieces together. It records the
user message, gathers analytics context, declares the expected intent, feeds
the generation stream through the router reducer and applies the effects
the reducer asks for. Drafts are committed only after the classifier has
confirmed them; persistence happens afterwards and never fails the turn.
"""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from ..domain.chat_models import INTENTS, ChatMessage, ContextData, normalize_intent
from ..domain.drafts import Draft, DraftNotFound
from ..infrastructure.draft_store import DraftRegistry
from ..observability.metrics import record_routing_outcome
from .context_supplier import ContextSupplier
from .edit_parser import parse_edit_response
from .range_edit import RangeEditRequest, build_range_edit_request
from .response_classifier import ResponseClassifier
from .stream_router import (
    ChunkReceived,
    Classified,
    CommitDraft,
    DraftPanelUpdate,
    Effect,
    Event,
    MessageCompleted,
    RequestClassification,
    RouterState,
    ShowError,
    StreamEnded,
    StreamFailed,
    StreamStarted,
    TranscriptUpdate,
    initial_state,
    reduce,
)
from .telemetry_sink import TelemetryEvent, record_event, record_metric

logger = logging.getLogger(__name__)
LOG = logging.getLogger("composer.llm")

EMPTY_MESSAGE_ERROR = "Message cannot be empty"


class StreamInProgress(RuntimeError):
    """A second message was sent while a response is still streaming."""


class GenerationSource(Protocol):
    def stream(
        self,
        history: List[Dict[str, str]],
        intent: Optional[str],
        context: Optional[ContextData],
    ) -> AsyncIterator[str]: ...


class Persistence(Protocol):
    def save_message(self, thread_id: str, message: ChatMessage) -> Any: ...

    def save_draft_version(self, thread_id: str, draft: Draft, version: int) -> Optional[str]: ...


IntentDetector = Callable[[str, bool], str]


@dataclass
class StreamCallbacks:
    on_draft_stream: Optional[Callable[[str, Optional[str]], Any]] = None
    on_draft_stream_complete: Optional[Callable[[str, str, str], Any]] = None
    on_ai_message_complete: Optional[Callable[[str, Optional[str], str], Any]] = None
    on_transcript_update: Optional[Callable[[ChatMessage], Any]] = None
    on_error: Optional[Callable[[str], Any]] = None


@dataclass
class _Turn:
    assistant: ChatMessage
    declared_intent: str
    edit_instruction: Optional[str] = None
    draft_id: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


async def _call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ConversationEngine:
    def __init__(
        self,
        generator: GenerationSource,
        classifier: ResponseClassifier,
        *,
        persistence: Optional[Persistence] = None,
        context_supplier: Optional[ContextSupplier] = None,
        intent_detector: Optional[IntentDetector] = None,
        callbacks: Optional[StreamCallbacks] = None,
        drafts: Optional[DraftRegistry] = None,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.generator = generator
        self.classifier = classifier
        self.persistence = persistence
        self.context_supplier = context_supplier
        self.intent_detector = intent_detector
        self.callbacks = callbacks or StreamCallbacks()
        self.drafts = drafts or DraftRegistry()
        self.thread_id = thread_id
        self.user_id = user_id
        self.organization_id = organization_id
        self._clock = clock

        self.messages: List[ChatMessage] = []
        self.error: Optional[str] = None
        self.current_intent: Optional[str] = None
        self.last_state: Optional[RouterState] = None
        self.last_range_edit: Optional[RangeEditRequest] = None
        self._streaming = False
        self._reserved = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def is_streaming(self) -> bool:
        return self._streaming or self._reserved

    def reserve(self) -> None:
        """Claim the conversation for a turn whose stream has not started yet."""

        if self._streaming or self._reserved:
            raise StreamInProgress("A response is already streaming for this conversation")
        self._reserved = True

    def release(self) -> None:
        self._reserved = False

    async def send_message(
        self,
        text: str,
        intent: Optional[str] = None,
        raw_content: Optional[str] = None,
        *,
        edit_instruction: Optional[str] = None,
        draft_id: Optional[str] = None,
        callbacks: Optional[StreamCallbacks] = None,
    ) -> Optional[ChatMessage]:
        """Send one user message and route the streamed reply.

        Returns the assistant message once it is resolved, or ``None`` when
        the input was empty or the stream failed (``self.error`` is set).
        """

        if self._streaming:
            raise StreamInProgress("A response is already streaming for this conversation")
        self._reserved = False
        if not text or not text.strip():
            self.error = EMPTY_MESSAGE_ERROR
            return None
        if callbacks is not None:
            self.callbacks = callbacks

        self._streaming = True
        self.error = None
        try:
            return await self._run_turn(text, intent, raw_content, edit_instruction, draft_id)
        finally:
            self._streaming = False

    async def send_range_edit(
        self,
        selected_text: str,
        instruction: str,
        draft_id: Optional[str] = None,
        callbacks: Optional[StreamCallbacks] = None,
    ) -> Optional[ChatMessage]:
        """Rewrite the draft around ``selected_text`` following ``instruction``."""

        if draft_id is not None:
            draft = self.drafts.select(draft_id)
        else:
            draft = self.drafts.active()
        request = build_range_edit_request(draft.content if draft else "", selected_text, instruction)
        self.last_range_edit = request
        logger.info(
            "range_edit_requested",
            extra={"draft_id": draft.id if draft else None, "span": request.span, "thread_id": self.thread_id},
        )
        return await self.send_message(
            request.display_text(),
            intent="edit",
            raw_content=request.to_prompt(),
            edit_instruction=request.instruction,
            draft_id=draft.id if draft else None,
            callbacks=callbacks,
        )

    def clear(self) -> None:
        self.messages = []
        self.error = None

    def remove_message(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.message_id != message_id]
        return len(self.messages) != before

    # ------------------------------------------------------------------
    # Turn orchestration
    # ------------------------------------------------------------------
    def _declare_intent(self, text: str, explicit: Optional[str]) -> str:
        if explicit:
            return normalize_intent(explicit)
        if self.intent_detector is not None:
            try:
                detected = self.intent_detector(text, self.drafts.active() is not None)
            except Exception as exc:
                logger.warning("intent_detection_failed", extra={"err": str(exc)})
                detected = None
            if detected in INTENTS:
                return detected  # type: ignore[return-value]
        return "general"

    async def _gather_context(self) -> ContextData:
        if self.context_supplier is None:
            return ContextData()
        try:
            return await self.context_supplier.fetch(self.user_id, self.organization_id)
        except Exception as exc:
            logger.warning("context_fetch_failed", extra={"err": str(exc), "organization_id": self.organization_id})
            return ContextData()

    def _history(self) -> List[Dict[str, str]]:
        history: List[Dict[str, str]] = []
        for m in self.messages:
            if m.is_error or m.is_streaming_progress:
                continue
            content = m.generator_content()
            if not content:
                continue
            history.append({"role": m.role, "content": content})
        return history

    async def _run_turn(
        self,
        text: str,
        intent: Optional[str],
        raw_content: Optional[str],
        edit_instruction: Optional[str],
        draft_id: Optional[str],
    ) -> Optional[ChatMessage]:
        declared = self._declare_intent(raw_content or text, intent)
        self.current_intent = declared

        user_message = ChatMessage(
            message_id=_new_id("user"),
            role="user",
            content=text,
            raw_content=raw_content,
            created_at=_now_iso(),
            intent=declared,  # type: ignore[arg-type]
        )
        self.messages.append(user_message)
        self._persist_message(user_message)

        context = await self._gather_context()
        history = self._history()

        assistant = ChatMessage(
            message_id=_new_id("assistant"),
            role="assistant",
            content="",
            created_at=_now_iso(),
            intent=declared,  # type: ignore[arg-type]
        )
        self.messages.append(assistant)
        turn = _Turn(
            assistant=assistant,
            declared_intent=declared,
            edit_instruction=edit_instruction or (text if declared == "edit" else None),
            draft_id=draft_id,
        )

        state = await self._dispatch(initial_state(), StreamStarted(assistant.message_id, declared, self._clock()), turn)
        try:
            async for chunk in self.generator.stream(history, declared, context):
                state = await self._dispatch(state, ChunkReceived(chunk, self._clock()), turn)
        except Exception as exc:
            LOG.warning("llm_stream_failed", extra={"err": str(exc), "thread_id": self.thread_id})
            state = await self._dispatch(state, StreamFailed(str(exc) or None), turn)
            self.last_state = state
            return None

        state = await self._dispatch(state, StreamEnded(self._clock()), turn)
        self.last_state = state
        record_metric(
            name="composer_stream_chunks",
            value=float(state.chunk_count),
            properties={"declared_intent": declared, "thread_id": self.thread_id},
        )
        return assistant

    async def _dispatch(self, state: RouterState, event: Event, turn: _Turn) -> RouterState:
        pending: List[Event] = [event]
        while pending:
            transition = reduce(state, pending.pop(0))
            state = transition.state
            for effect in transition.effects:
                follow_up = await self._apply(effect, state, turn)
                if follow_up is not None:
                    pending.append(follow_up)
        return state

    async def _apply(self, effect: Effect, state: RouterState, turn: _Turn) -> Optional[Event]:
        if isinstance(effect, DraftPanelUpdate):
            await _call(self.callbacks.on_draft_stream, effect.content, effect.intent)
        elif isinstance(effect, TranscriptUpdate):
            view = effect.view
            msg = turn.assistant
            msg.content = view.content
            msg.intent = view.intent  # type: ignore[assignment]
            msg.draft_content = view.draft_content
            msg.is_streaming_progress = view.is_streaming_progress
            msg.is_follow_up_question = view.is_follow_up_question
            await _call(self.callbacks.on_transcript_update, msg.model_copy())
        elif isinstance(effect, RequestClassification):
            label = await self.classifier.classify(effect.text, effect.intent)
            return Classified(label)
        elif isinstance(effect, CommitDraft):
            await self._commit_draft(effect, turn)
        elif isinstance(effect, MessageCompleted):
            await self._complete(effect, state, turn)
        elif isinstance(effect, ShowError):
            await self._show_error(effect, turn)
        return None

    # ------------------------------------------------------------------
    # Effect handlers
    # ------------------------------------------------------------------
    async def _commit_draft(self, effect: CommitDraft, turn: _Turn) -> None:
        msg = turn.assistant
        if effect.intent == "edit":
            parsed = parse_edit_response(effect.content)
            content = parsed.content if parsed.content.strip() else effect.content
            target = self.drafts.get(turn.draft_id) if turn.draft_id else self.drafts.active()
            if target is None:
                draft = self.drafts.create(effect.message_id, content)
            else:
                try:
                    draft = self.drafts.apply_edit(target.id, content, turn.edit_instruction, parsed.changes)
                except DraftNotFound:
                    draft = self.drafts.create(effect.message_id, content)
        else:
            draft = self.drafts.create(effect.message_id, effect.content)

        msg.draft_content = draft.content
        msg.draft_id = draft.id
        msg.draft_version = draft.current_version
        logger.info(
            "draft_committed",
            extra={"draft_id": draft.id, "version": draft.current_version, "intent": effect.intent},
        )
        await _call(self.callbacks.on_draft_stream_complete, draft.content, effect.intent, effect.message_id)

        if self.persistence is not None and self.thread_id:
            external_id = self._persist(
                "save_draft_version", self.persistence.save_draft_version, self.thread_id, draft, draft.current_version
            )
            if external_id:
                self.drafts.mark_persisted(draft.id, draft.current_version, str(external_id))

    async def _complete(self, effect: MessageCompleted, state: RouterState, turn: _Turn) -> None:
        outcome = state.response_type or "empty"
        if outcome == "question":
            logger.info("routing_rollback", extra={"message_id": effect.message_id, "declared_intent": turn.declared_intent})
        record_routing_outcome(turn.declared_intent, outcome)
        record_event(
            TelemetryEvent(
                name="routing_resolved",
                properties={
                    "thread_id": self.thread_id,
                    "message_id": effect.message_id,
                    "declared_intent": turn.declared_intent,
                    "outcome": outcome,
                    "chunks": state.chunk_count,
                },
                actor=self.user_id,
            )
        )
        await _call(self.callbacks.on_ai_message_complete, effect.content, effect.intent, effect.message_id)
        self._persist_message(turn.assistant)

    async def _show_error(self, effect: ShowError, turn: _Turn) -> None:
        msg = turn.assistant
        msg.content = effect.message
        msg.intent = None
        msg.draft_content = None
        msg.is_streaming_progress = False
        msg.is_follow_up_question = False
        msg.is_error = True
        self.error = effect.message
        record_routing_outcome(turn.declared_intent, "failed")
        await _call(self.callbacks.on_error, effect.message)

    # ------------------------------------------------------------------
    # Persistence (fire-and-forget)
    # ------------------------------------------------------------------
    def _persist(self, action: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as exc:
            logger.warning("persistence_failed", extra={"action": action, "thread_id": self.thread_id, "err": str(exc)})
            return None

    def _persist_message(self, message: ChatMessage) -> None:
        if self.persistence is None or not self.thread_id:
            return
        self._persist("save_message", self.persistence.save_message, self.thread_id, message.model_copy())

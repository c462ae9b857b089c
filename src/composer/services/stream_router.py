"""Route a streamed assistant response to the transcript or the draft panel.

The router is a pure reducer: ``reduce(state, event)`` returns the next
:class:`RouterState` together with the effects the caller has to apply
(panel updates, transcript updates, classification requests, commits).
Nothing in this module performs I/O, so every routing decision can be
replayed from a list of events.

Lifecycle::

    idle -> streaming -> classifying -> resolved
                     \\-> resolved (chat intents, empty drafts)
                     \\-> failed   (transport errors)
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple, Union

from ..domain.chat_models import DRAFT_INTENTS
from .response_classifier import is_follow_up_question

logger = logging.getLogger("composer.router")

PLACEHOLDER_INTERVAL_SECONDS = 1.0

# Window in which a draft reply is checked for an opening clarifying question
EARLY_SWITCH_MIN_CHARS = 50
EARLY_SWITCH_MAX_CHARS = 200

PROGRESS_PHRASES: Tuple[str, ...] = (
    "Reading your analytics...",
    "Finding the right hook...",
    "Shaping the story...",
    "Tightening the wording...",
    "Adding the finishing touches...",
)

DEFAULT_STREAM_ERROR = "The response was interrupted. Please try again."


class Phase(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    CLASSIFYING = "classifying"
    RESOLVED = "resolved"
    FAILED = "failed"


class Target(str, enum.Enum):
    TRANSCRIPT = "transcript"
    DRAFT_PANEL = "draft_panel"


@dataclass(frozen=True)
class TranscriptView:
    """What the transcript shows for the assistant message being streamed."""

    content: str = ""
    intent: Optional[str] = None
    draft_content: Optional[str] = None
    is_streaming_progress: bool = False
    is_follow_up_question: bool = False


@dataclass(frozen=True)
class RouterState:
    message_id: Optional[str] = None
    declared_intent: Optional[str] = None
    phase: Phase = Phase.IDLE
    optimistic_target: Optional[Target] = None
    final_target: Optional[Target] = None
    accumulated: str = ""
    final_text: Optional[str] = None
    chunk_count: int = 0
    placeholder_index: int = 0
    placeholder_shown_at: Optional[float] = None
    response_type: Optional[str] = None
    switched_early: bool = False
    view: TranscriptView = field(default_factory=TranscriptView)


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class StreamStarted:
    message_id: str
    intent: Optional[str]
    at: float = 0.0


@dataclass(frozen=True)
class ChunkReceived:
    text: str
    at: float = 0.0


@dataclass(frozen=True)
class StreamEnded:
    at: float = 0.0


@dataclass(frozen=True)
class Classified:
    response_type: str


@dataclass(frozen=True)
class StreamFailed:
    error: Optional[str] = None


Event = Union[StreamStarted, ChunkReceived, StreamEnded, Classified, StreamFailed]


# ----------------------------------------------------------------------
# Effects
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DraftPanelUpdate:
    # Empty content tells the panel to drop whatever it is showing
    content: str
    intent: Optional[str] = None


@dataclass(frozen=True)
class TranscriptUpdate:
    view: TranscriptView


@dataclass(frozen=True)
class RequestClassification:
    text: str
    intent: str


@dataclass(frozen=True)
class CommitDraft:
    content: str
    intent: str
    message_id: str


@dataclass(frozen=True)
class MessageCompleted:
    content: str
    intent: Optional[str]
    message_id: str


@dataclass(frozen=True)
class ShowError:
    message: str


Effect = Union[DraftPanelUpdate, TranscriptUpdate, RequestClassification, CommitDraft, MessageCompleted, ShowError]


@dataclass(frozen=True)
class Transition:
    state: RouterState
    effects: Tuple[Effect, ...] = ()


# ----------------------------------------------------------------------
# Text cleanup
# ----------------------------------------------------------------------
# Marker lines may be wrapped in punctuation, e.g. "[END OF FILE]" or "=== End of post ==="
_ARTIFACT_MARKERS = (
    re.compile(r"^[^\w\n]*end of (?:file|document|post|response)[^\w\n]*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^[^\w\n]*(?:previous\s+)?conversation history\b.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"<\|(?:endoftext|im_end|im_start|eot_id|end)\|>"),
    re.compile(r"</s>"),
)
_BLANK_RUNS = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")


def clean_generated_text(text: str) -> str:
    """Cut the text at the first artifact marker and normalise blank lines."""

    cleaned = (text or "").replace("\r\n", "\n")
    cut = len(cleaned)
    for marker in _ARTIFACT_MARKERS:
        match = marker.search(cleaned)
        if match and match.start() < cut:
            cut = match.start()
    cleaned = cleaned[:cut]
    cleaned = _BLANK_RUNS.sub("\n\n", cleaned)
    return cleaned.strip()


# ----------------------------------------------------------------------
# Reducer
# ----------------------------------------------------------------------
def initial_state() -> RouterState:
    return RouterState()


def is_draft_intent(intent: Optional[str]) -> bool:
    return intent in DRAFT_INTENTS


def _ignored(state: RouterState, event: Event) -> Transition:
    logger.debug(
        "router_event_ignored",
        extra={"event": type(event).__name__, "phase": state.phase.value, "message_id": state.message_id},
    )
    return Transition(state=state)


def _on_started(state: RouterState, event: StreamStarted) -> Transition:
    if state.phase in (Phase.STREAMING, Phase.CLASSIFYING):
        return _ignored(state, event)
    if is_draft_intent(event.intent):
        view = TranscriptView(
            content=PROGRESS_PHRASES[0],
            intent=event.intent,
            is_streaming_progress=True,
        )
        new_state = RouterState(
            message_id=event.message_id,
            declared_intent=event.intent,
            phase=Phase.STREAMING,
            optimistic_target=Target.DRAFT_PANEL,
            placeholder_index=0,
            placeholder_shown_at=event.at,
            view=view,
        )
        return Transition(new_state, (TranscriptUpdate(view),))

    new_state = RouterState(
        message_id=event.message_id,
        declared_intent=event.intent,
        phase=Phase.STREAMING,
        optimistic_target=Target.TRANSCRIPT,
        view=TranscriptView(content="", intent=event.intent),
    )
    return Transition(new_state)


def _on_chunk(state: RouterState, event: ChunkReceived) -> Transition:
    if state.phase is not Phase.STREAMING:
        return _ignored(state, event)
    accumulated = state.accumulated + (event.text or "")
    state = replace(state, accumulated=accumulated, chunk_count=state.chunk_count + 1)

    if state.optimistic_target is Target.TRANSCRIPT:
        view = replace(state.view, content=accumulated)
        return Transition(replace(state, view=view), (TranscriptUpdate(view),))

    if EARLY_SWITCH_MIN_CHARS <= len(accumulated) < EARLY_SWITCH_MAX_CHARS and is_follow_up_question(accumulated):
        return _switch_to_transcript(state)

    effects: list = [DraftPanelUpdate(accumulated, state.declared_intent)]
    shown_at = state.placeholder_shown_at
    if shown_at is None or event.at - shown_at >= PLACEHOLDER_INTERVAL_SECONDS:
        index = state.placeholder_index if shown_at is None else (state.placeholder_index + 1) % len(PROGRESS_PHRASES)
        view = replace(state.view, content=PROGRESS_PHRASES[index], is_streaming_progress=True)
        state = replace(state, placeholder_index=index, placeholder_shown_at=event.at, view=view)
        effects.append(TranscriptUpdate(view))
    return Transition(state, tuple(effects))


def _switch_to_transcript(state: RouterState) -> Transition:
    # Classification still runs at the end and may move the reply back
    view = TranscriptView(content=state.accumulated, intent=None)
    switched = replace(state, optimistic_target=Target.TRANSCRIPT, switched_early=True, view=view)
    logger.info(
        "routing_early_switch",
        extra={"message_id": state.message_id, "intent": state.declared_intent, "chars": len(state.accumulated)},
    )
    return Transition(switched, (DraftPanelUpdate("", state.declared_intent), TranscriptUpdate(view)))


def _on_ended(state: RouterState, event: StreamEnded) -> Transition:
    if state.phase is not Phase.STREAMING:
        return _ignored(state, event)
    cleaned = clean_generated_text(state.accumulated)
    state = replace(state, final_text=cleaned)
    message_id = state.message_id or ""

    if state.optimistic_target is Target.DRAFT_PANEL or state.switched_early:
        if not cleaned:
            view = TranscriptView(content="", intent=None)
            resolved = replace(state, phase=Phase.RESOLVED, final_target=Target.TRANSCRIPT, view=view)
            logger.info("routing_empty_draft", extra={"message_id": message_id, "intent": state.declared_intent})
            return Transition(
                resolved,
                (DraftPanelUpdate("", state.declared_intent), TranscriptUpdate(view), MessageCompleted("", None, message_id)),
            )
        classifying = replace(state, phase=Phase.CLASSIFYING)
        return Transition(classifying, (RequestClassification(cleaned, state.declared_intent or "draft"),))

    view = replace(state.view, content=cleaned)
    resolved = replace(state, phase=Phase.RESOLVED, final_target=Target.TRANSCRIPT, response_type="chat", view=view)
    return Transition(
        resolved,
        (TranscriptUpdate(view), MessageCompleted(cleaned, state.declared_intent, message_id)),
    )


def _on_classified(state: RouterState, event: Classified) -> Transition:
    if state.phase is not Phase.CLASSIFYING:
        return _ignored(state, event)
    text = state.final_text or ""
    intent = state.declared_intent or "draft"
    message_id = state.message_id or ""

    if event.response_type == "question":
        view = TranscriptView(content=text, intent=None, is_follow_up_question=True)
        resolved = replace(
            state,
            phase=Phase.RESOLVED,
            final_target=Target.TRANSCRIPT,
            response_type="question",
            view=view,
        )
        logger.info("routing_rollback", extra={"message_id": message_id, "intent": intent})
        return Transition(
            resolved,
            (DraftPanelUpdate("", intent), TranscriptUpdate(view), MessageCompleted(text, None, message_id)),
        )

    # Anything that is not a question is committed as a draft
    view = TranscriptView(content=text, intent=intent, draft_content=text)
    resolved = replace(
        state,
        phase=Phase.RESOLVED,
        final_target=Target.DRAFT_PANEL,
        response_type="draft",
        view=view,
    )
    return Transition(
        resolved,
        (
            DraftPanelUpdate(text, intent),
            TranscriptUpdate(view),
            CommitDraft(text, intent, message_id),
            MessageCompleted(text, intent, message_id),
        ),
    )


def _on_failed(state: RouterState, event: StreamFailed) -> Transition:
    if state.phase is not Phase.STREAMING:
        return _ignored(state, event)
    view = TranscriptView(content="", intent=None)
    failed = replace(state, phase=Phase.FAILED, view=view)
    effects: list = []
    if state.optimistic_target is Target.DRAFT_PANEL:
        effects.append(DraftPanelUpdate("", state.declared_intent))
    effects.append(TranscriptUpdate(view))
    effects.append(ShowError(event.error or DEFAULT_STREAM_ERROR))
    return Transition(failed, tuple(effects))


def reduce(state: RouterState, event: Event) -> Transition:
    if isinstance(event, StreamStarted):
        return _on_started(state, event)
    if isinstance(event, ChunkReceived):
        return _on_chunk(state, event)
    if isinstance(event, StreamEnded):
        return _on_ended(state, event)
    if isinstance(event, Classified):
        return _on_classified(state, event)
    if isinstance(event, StreamFailed):
        return _on_failed(state, event)
    raise TypeError(f"Unsupported router event: {type(event).__name__}")

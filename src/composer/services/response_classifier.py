"""Decide whether a draft/edit response is a post or a clarifying question.

Responses declared as ``draft`` or ``edit`` are streamed to the draft panel
before anyone knows what they contain. Once the stream finishes, the
classifier makes the authoritative call. Failures never surface to the user:
they resolve to ``"draft"`` because a question shown in the panel is
recoverable while a draft swallowed into the transcript is not.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Literal, Optional, Protocol

from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from ..domain.chat_models import DRAFT_INTENTS
from ..observability.metrics import record_classifier_fallback
from .model_router import ModelRouter, ProviderSelection

LOG = logging.getLogger("composer.llm")
logger = logging.getLogger(__name__)

CLASSIFIER_MAX_CHARS = 1500
_CLASSIFIER_TIMEOUT = float(os.getenv("COMPOSER_CLASSIFIER_TIMEOUT", "8"))


class ClassifierService(Protocol):
    async def classify(self, content: str, intent: str) -> str:
        ...


# ----------------------------------------------------------------------
# Deterministic service
# ----------------------------------------------------------------------
_HASHTAG = re.compile(r"(?:^|\s)#[A-Za-z][\w-]*")
_STRUCTURED_EDIT = re.compile(r"^\s*(?:#+\s*)?(?:\*\*)?\s*(?:1[.)]\s*)?(?:revised|updated|edited)\s+(?:linkedin\s+)?post\b", re.IGNORECASE | re.MULTILINE)
_OPTION_LINE = re.compile(r"^\s*(?:\d+[.)]|[-*•]|[a-d][.)])\s+\S", re.MULTILINE)
_PREFERENCE = re.compile(
    r"\b(?:which (?:one|angle|approach|option|direction|version|style|tone)|would you (?:like|prefer)|do you (?:want|prefer)|"
    r"prefer|let me know which|pick one|choose)\b",
    re.IGNORECASE,
)
_QUESTION_START = re.compile(
    r"^(?:could you|can you|would you|should i|do you want|do you mean|what|which|how|why|where|when)\b",
    re.IGNORECASE,
)
_CLARIFICATION = re.compile(
    r"clarify|which (?:one|type|style|tone|version|approach|angle)|what do you mean|more specific|help me understand|"
    r"not sure (?:what|which|how)",
    re.IGNORECASE,
)


def classify_text(content: str) -> str:
    """Keyword and layout rules mirroring what the hosted classifier is told."""

    text = (content or "").strip()
    if not text:
        return "draft"
    if _HASHTAG.search(text) or _STRUCTURED_EDIT.search(text):
        return "draft"

    options = len(_OPTION_LINE.findall(text))
    if options >= 2 and "?" in text and _PREFERENCE.search(text):
        return "question"

    # Long answers are delivered content; a trailing question alone proves nothing
    if len(text) > 300:
        return "draft"
    if _QUESTION_START.match(text) or _CLARIFICATION.search(text):
        return "question"
    return "draft"


_NUMBERED_REPLY = re.compile(r"^1\.|revised post", re.IGNORECASE | re.MULTILINE)


def is_follow_up_question(content: str) -> bool:
    """Mid-stream guess that a draft reply is really a clarifying question.

    Only the question opener and clarification phrases count. The final
    classification still decides where the message ends up.
    """

    text = content or ""
    if _NUMBERED_REPLY.search(text) or len(text) > 300:
        return False
    return bool(_QUESTION_START.match(text.strip()) or _CLARIFICATION.search(text))


class HeuristicClassifierService:
    """Used when no hosted model is configured, and throughout the tests."""

    async def classify(self, content: str, intent: str) -> str:
        return classify_text(content)


# ----------------------------------------------------------------------
# Hosted service
# ----------------------------------------------------------------------
class ResponseTypeResult(BaseModel):
    responseType: Literal["draft", "question"] = Field(
        description=(
            "draft: the response contains actual LinkedIn post content ready for review or editing "
            "(hook, body paragraphs, hashtags, call to action, post-style emojis). "
            "question: the assistant asks clarifying questions before writing (numbered options, "
            "'Which approach?', 'What angle?', 'Do you want to...', asks for preference or more context)."
        )
    )


CLASSIFICATION_PROMPT = """Classify this AI assistant response. Is it an actual LinkedIn post draft, or is it asking clarifying questions before writing?

AI Response to classify:
\"\"\"
{content}
\"\"\"

Key indicators:
- DRAFT: Contains actual post content (hook, body, hashtags, CTA), formatted like a LinkedIn post, ready to publish/edit
- QUESTION: Asks "which approach?", "what angle?", offers numbered options, seeks user preference, asks for clarification

Classify this response:"""


class LLMClassifierService:
    def __init__(self, selection: ProviderSelection, client: Optional[object] = None) -> None:
        self.selection = selection
        self._client = client

    def _structured_client(self):
        if self._client is None:
            api_key = os.getenv(self.selection.api_key_env) if self.selection.api_key_env else None
            base_url = self.selection.default_base_url
            if self.selection.base_url_env:
                base_url = os.getenv(self.selection.base_url_env, base_url)
            llm = ChatOpenAI(api_key=api_key, base_url=base_url, model=self.selection.model, temperature=0.1)
            self._client = llm.with_structured_output(ResponseTypeResult)
        return self._client

    async def classify(self, content: str, intent: str) -> str:
        client = self._structured_client()
        result = await client.ainvoke(CLASSIFICATION_PROMPT.format(content=content))  # type: ignore[attr-defined]
        if isinstance(result, dict):
            result = ResponseTypeResult.model_validate(result)
        LOG.debug(
            "classifier_result",
            extra={"model": self.selection.model, "intent": intent, "response_type": result.responseType},
        )
        return result.responseType


def get_classifier_service(router: Optional[ModelRouter] = None) -> ClassifierService:
    selection = (router or ModelRouter()).maybe_select_provider("classification")
    if selection is None:
        logger.info("No classification provider configured; using keyword classifier")
        return HeuristicClassifierService()
    logger.info("Using hosted response classifier provider=%s model=%s", selection.name, selection.model)
    return LLMClassifierService(selection)


class ResponseClassifier:
    def __init__(self, service: Optional[ClassifierService] = None, timeout: Optional[float] = None) -> None:
        self.service = service if service is not None else get_classifier_service()
        self.timeout = _CLASSIFIER_TIMEOUT if timeout is None else timeout

    async def classify(self, full_text: str, declared_intent: Optional[str]) -> str:
        """Return ``"draft"``, ``"question"``, or ``"chat"`` for non-draft intents."""

        if declared_intent not in DRAFT_INTENTS:
            return "chat"
        excerpt = (full_text or "")[:CLASSIFIER_MAX_CHARS]
        try:
            label = await asyncio.wait_for(self.service.classify(excerpt, declared_intent), timeout=self.timeout)
        except asyncio.TimeoutError:
            LOG.warning("classifier_fallback", extra={"reason": "timeout", "timeout_s": self.timeout})
            record_classifier_fallback("timeout")
            return "draft"
        except Exception as exc:
            LOG.warning("classifier_fallback", extra={"reason": "error", "err": str(exc)})
            record_classifier_fallback("error")
            return "draft"

        if label not in ("draft", "question"):
            LOG.warning("classifier_fallback", extra={"reason": "malformed", "label": repr(label)})
            record_classifier_fallback("malformed")
            return "draft"
        return label

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple
import json
import logging
import os
import re
import time

import requests
from langchain_openai import ChatOpenAI
from requests.adapters import HTTPAdapter
from starlette.concurrency import iterate_in_threadpool
from urllib3.util.retry import Retry

from ..domain.chat_models import ContextData
from .model_router import ModelRouter
from .streaming import iter_as_async, tokens_only


logger = logging.getLogger(__name__)
LOG = logging.getLogger("composer.llm")


_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("COMPOSER_LLM_BREAKER_THRESHOLD", "2"))
_BREAKER_COOLDOWN = float(os.getenv("COMPOSER_LLM_BREAKER_COOLDOWN", "120.0"))
_STREAM_TIMEOUT = (
    int(os.getenv("COMPOSER_LLM_CONNECT_TIMEOUT", "3")),
    int(os.getenv("COMPOSER_LLM_READ_TIMEOUT", "60")),
)


class ProviderUnavailable(RuntimeError):
    """No generation provider is configured, or the local breaker is open."""


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning(
            "llm_breaker_opened",
            extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
        )


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("llm_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


# ----------------------------------------------------------------------
# Intent detection
# ----------------------------------------------------------------------
_EDIT_PATTERNS = (
    re.compile(r"\b(?:edit|rewrite|re-write|revise|rephrase|shorten|lengthen|tweak|polish|proofread)\b"),
    re.compile(r"\bmake (?:it|this|the post|my post) (?:shorter|longer|punchier|more|less|sound)\b"),
    re.compile(r"\b(?:change|update|fix|adjust) (?:the|this|my|it|that)\b"),
)
_REFINEMENT = re.compile(r"^(?:make|add|remove|drop|cut|use|try|more|less|shorter|longer|swap|replace)\b")
_FEEDBACK_TERMS = (
    "feedback",
    "review my",
    "review this",
    "critique",
    "what do you think",
    "thoughts on",
    "how does this look",
    "is this good",
    "rate my",
    "rate this",
)
_IDEATE_TERMS = (
    "idea",
    "brainstorm",
    "topics",
    "what should i post",
    "what should i write",
    "angles",
    "inspiration",
    "content calendar",
)
_DRAFT_TERMS = (
    "write",
    "draft",
    "create a post",
    "post about",
    "compose",
    "announce",
    "linkedin post",
)


def detect_user_intent(user_message: str, has_draft: bool = False) -> str:
    """Predict the intent of a user turn.

    Returns one of ``{"edit", "feedback", "ideate", "draft", "general"}``
    using keyword heuristics. Short refinements ("make it punchier") count
    as edits only when there is a draft to refine.
    """

    text = (user_message or "").strip().lower()
    if not text:
        return "general"

    for pattern in _EDIT_PATTERNS:
        if pattern.search(text):
            return "edit"
    if has_draft and _REFINEMENT.search(text):
        return "edit"
    for term in _FEEDBACK_TERMS:
        if term in text:
            return "feedback"
    for term in _IDEATE_TERMS:
        if term in text:
            return "ideate"
    for term in _DRAFT_TERMS:
        if term in text:
            return "draft"
    return "general"


# ----------------------------------------------------------------------
# Prompts
# ----------------------------------------------------------------------
_DRAFT_PROMPT = """ROLE:
You are Composer, a senior content strategist and ghostwriter for LinkedIn.
Write posts in the user's own voice that read as if they wrote them on their best day.

WRITING RULES:
- Anchor the post in lived experience, a concrete observation, or a clear opinion
- The first two or three lines must be skimmable and make people stop scrolling
- Vary sentence length; prefer plain language over clever phrasing
- No buzzwords, no generic openers, no filler phrases, no em dashes
- Keep it under 3000 characters
- End with a genuine question or a soft reflection

If the request is too vague to write a credible post, ask ONE short clarifying question and stop.

OUTPUT:
Return only the final LinkedIn post. Do not explain your reasoning."""

_EDIT_PROMPT = """ROLE:
You are a careful editor of LinkedIn posts.

TASK:
Edit the most recent post in this conversation following the user's instruction.

EDITING RULES:
- Preserve the author's voice and intent
- Improve clarity, flow, and emphasis
- Do not introduce new ideas unless they are needed for clarity
- Keep the length roughly similar unless told otherwise

If the editing objective is unclear, ask ONE clarifying question and stop.

OUTPUT FORMAT:
1. Revised post
<the full updated post>

2. Changes made
- up to 3 bullet points explaining what was improved and why"""

_IDEATE_PROMPT = """ROLE:
You are a content strategist generating specific, non-generic LinkedIn post ideas for an expert.

IDEATION RULES:
- Anchor every idea to one content theme the author is credible on
- Prefer specific situations, decisions, and lessons over tips
- Avoid common LinkedIn tropes and motivational filler

For each idea provide:
1. **Working title / angle**
2. **Core insight or point**
3. **Why this resonates with the audience**
4. **Content theme alignment**

If the author's expertise or audience is unclear, ask clarifying questions and stop.
Return only the list of ideas."""

_FEEDBACK_PROMPT = """ROLE:
You are an experienced, honest reviewer of professional LinkedIn content.

Assess the post for clarity, audience relevance, authenticity of voice and expertise alignment.
If the post is strong, say so plainly and do not invent problems.
Otherwise name the one to three issues that most limit its impact and give concrete, high-impact suggestions.

Do not rewrite the post. Return only the feedback."""

_GENERAL_PROMPT = """You are a LinkedIn content expert helping create engaging posts.
Help the user draft, refine, and improve content based on the organization's analytics and brand voice.

Key guidelines:
- Create authentic, professional content that matches the organization's voice
- Reference audience demographics and past performance when relevant
- Provide specific, actionable suggestions
- Keep posts concise and engaging (aim for 500-1500 characters)
- Add 3-5 relevant hashtags when appropriate"""

_INTENT_PROMPTS = {
    "draft": _DRAFT_PROMPT,
    "edit": _EDIT_PROMPT,
    "ideate": _IDEATE_PROMPT,
    "feedback": _FEEDBACK_PROMPT,
}

_CONTEXT_SECTIONS = (
    ("summary", "Organization Summary"),
    ("demographic_data", "Audience Demographics"),
    ("recent_posts", "Recent Post Examples"),
    ("engagement_patterns", "What Resonates"),
)


def build_system_prompt(context: Optional[ContextData], intent: Optional[str]) -> str:
    prompt = _INTENT_PROMPTS.get(intent or "", _GENERAL_PROMPT) + "\n"
    included: List[str] = []
    if context is not None:
        for attr, title in _CONTEXT_SECTIONS:
            value = getattr(context, attr, None)
            if value:
                prompt += f"\n## {title}\n{value}\n"
                included.append(attr)
    prompt += "\nRemember: you are helping this specific organization create content that matches their voice and audience."
    LOG.debug("system_prompt_built", extra={"intent": intent, "sections": included, "chars": len(prompt)})
    return prompt


def build_messages(
    history: List[Dict[str, str]],
    intent: Optional[str],
    context: Optional[ContextData],
) -> List[Dict[str, str]]:
    msgs = [{"role": "system", "content": build_system_prompt(context, intent)}]
    for m in history:
        r = m.get("role") or "user"
        c = m.get("content") or ""
        if r not in ("system", "user", "assistant"):
            r = "user"
        msgs.append({"role": r, "content": c})
    return msgs


# ----------------------------------------------------------------------
# Clients
# ----------------------------------------------------------------------
class LocalLLMClient:
    def __init__(self, base_url: str, model: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = _STREAM_TIMEOUT
        self._session = _build_session()
        self.api_style = (os.getenv("COMPOSER_LLM_LOCAL_API") or "auto").lower()

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[Dict[str, Any]]:
        if self.api_style == "ollama":
            yield from self._stream_ollama(messages)
            return
        if self.api_style == "openai":
            yield from self._stream_openai(messages)
            return
        yielded = False
        try:
            for frame in self._stream_openai(messages):
                yielded = True
                yield frame
        except requests.exceptions.RequestException as exc:
            # Fall back only before the first token
            if yielded:
                raise
            LOG.warning(
                "local_llm_stream_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            yield from self._stream_ollama(messages)

    def _stream_openai(self, messages: List[Dict[str, str]]) -> Iterator[Dict[str, Any]]:
        LOG.debug(
            "local_llm_stream",
            extra={"model": self.model, "base_url": self.base_url, "timeout": self._timeout},
        )
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": True,
        }
        with self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=payload,
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield {"token": token}

    def _stream_ollama(self, messages: List[Dict[str, str]]) -> Iterator[Dict[str, Any]]:
        prompt = self._messages_to_prompt(messages)
        LOG.debug(
            "local_llm_stream_ollama",
            extra={"model": self.model, "base_url": self.base_url},
        )
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": True,
        }
        with self._session.post(
            f"{self.base_url}/api/generate",
            json=payload,
            timeout=(self._timeout[0], max(self._timeout[1], 120)),
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line)
                except json.JSONDecodeError:
                    continue
                token = data.get("response") or ""
                if token:
                    yield {"token": token}
                if data.get("done"):
                    break

    @staticmethod
    def _messages_to_prompt(messages: List[Dict[str, str]]) -> str:
        parts: List[str] = []
        for msg in messages:
            role = (msg.get("role") or "user").strip().upper()
            content = msg.get("content") or ""
            parts.append(f"{role}: {content}")
        parts.append("ASSISTANT:")
        return "\n".join(parts)


def _get_llm(purpose: str = "generation", router: Optional[ModelRouter] = None) -> Tuple[object, str, str]:
    selection = (router or ModelRouter()).maybe_select_provider(purpose)
    if selection is None:
        raise ProviderUnavailable("LLM not configured")

    base_url = selection.default_base_url
    if selection.base_url_env:
        base_url = os.getenv(selection.base_url_env) or base_url

    if selection.name == "local":
        if _breaker_open():
            raise ProviderUnavailable("llm_circuit_open")
        logger.info("Using local LLM provider base_url=%s model=%s", base_url, selection.model)
        return LocalLLMClient(base_url=base_url or "http://127.0.0.1:11434", model=selection.model), selection.name, selection.model

    api_key = os.getenv(selection.api_key_env) if selection.api_key_env else None
    if selection.requires_api_key and not api_key:
        raise ProviderUnavailable("LLM not configured")

    logger.info(
        "Using remote LLM provider name=%s model=%s base_url=%s",
        selection.name,
        selection.model,
        base_url,
    )
    client = ChatOpenAI(api_key=api_key, base_url=base_url, model=selection.model, temperature=0.7, streaming=True)
    return client, selection.name, selection.model


# ----------------------------------------------------------------------
# Offline fallback
# ----------------------------------------------------------------------
def _topic_from(history: List[Dict[str, str]]) -> str:
    for turn in reversed(history):
        if (turn.get("role") or "user") == "user":
            content = (turn.get("content") or "").strip()
            if content:
                first_line = content.splitlines()[0].strip()
                return first_line if len(first_line) <= 160 else first_line[:157] + "..."
    return "what we have been working on"


def _last_assistant(history: List[Dict[str, str]]) -> Optional[str]:
    for turn in reversed(history):
        if turn.get("role") == "assistant" and (turn.get("content") or "").strip():
            return turn["content"].strip()
    return None


def _fallback_reply(history: List[Dict[str, str]], intent: Optional[str]) -> str:
    """Deterministic reply used when no model provider is configured."""

    topic = _topic_from(history)
    if intent == "draft":
        return "\n".join(
            [
                f"A quick note on {topic.rstrip('.?!')}.",
                "",
                "Most of what we learned came from small decisions made on ordinary days.",
                "We kept what worked, dropped what did not, and wrote down why.",
                "",
                "What is one decision like that your team made recently?",
                "",
                "#leadership #lessonslearned",
            ]
        )
    if intent == "edit":
        previous = _last_assistant(history) or topic
        return "\n".join(
            [
                "1. Revised post",
                previous,
                "",
                "2. Changes made",
                "- Kept the original wording; no writing model is configured to apply the edit.",
            ]
        )
    if intent == "ideate":
        return "\n".join(
            [
                f"1. **A decision behind {topic.rstrip('.?!')}**: what you chose and what you gave up.",
                "2. **A mistake worth sharing**: the moment you changed your mind and why.",
                "3. **A number that surprised you**: one metric from your analytics and the story behind it.",
            ]
        )
    if intent == "feedback":
        return (
            "The post has a clear point of view. Tighten the first two lines so the hook lands "
            "before the fold, and close with one specific question for your audience."
        )
    return f"Happy to help with {topic.rstrip('.?!')}. Do you want a draft post, a few ideas, or feedback on something you wrote?"


def _chunk_words(text: str) -> Iterator[str]:
    for piece in re.findall(r"\S+\s*|\s+", text):
        yield piece


# ----------------------------------------------------------------------
# Generation source used by the conversation engine
# ----------------------------------------------------------------------
class LLMGenerationSource:
    """Streams assistant text for a conversation turn.

    Hosted providers go through ``ChatOpenAI.astream``; the local provider
    streams over ``requests``. With no provider configured the reply comes
    from :func:`_fallback_reply` so the UI stays usable offline.
    """

    def __init__(self, router: Optional[ModelRouter] = None) -> None:
        self.router = router

    async def stream(
        self,
        history: List[Dict[str, str]],
        intent: Optional[str],
        context: Optional[ContextData],
    ) -> AsyncIterator[str]:
        msgs = build_messages(history, intent, context)
        try:
            llm, provider, model = _get_llm("generation", self.router)
        except ProviderUnavailable as exc:
            LOG.info("llm_fallback_deterministic", extra={"err": str(exc), "intent": intent})
            async for piece in iter_as_async(_chunk_words(_fallback_reply(history, intent))):
                yield piece
            return

        LOG.info("llm_stream_started", extra={"provider": provider, "model": model, "intent": intent})
        try:
            if isinstance(llm, LocalLLMClient):
                # Blocking reads run on the thread pool, one frame at a time
                async for token in tokens_only(iterate_in_threadpool(llm.stream(msgs))):
                    yield token
            else:
                async for chunk in llm.astream(msgs):  # type: ignore[attr-defined]
                    text = chunk.content if hasattr(chunk, "content") else str(chunk)
                    if text:
                        yield text
        except Exception as exc:
            if isinstance(llm, LocalLLMClient):
                _record_fail()
            LOG.warning("llm_stream_failed", extra={"provider": provider, "model": model, "err": str(exc)})
            raise
        if isinstance(llm, LocalLLMClient):
            _record_success()

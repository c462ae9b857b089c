from __future__ import annotations

import asyncio
import logging
import os
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.chat_models import ContextData

logger = logging.getLogger(__name__)

_CONTEXT_BASE_URL = os.getenv("COMPOSER_CONTEXT_BASE_URL")
_CONTEXT_TIMEOUT = (3, 10)
_SECTION_LIMIT = 2000
_TOP_POSTS = 5


class ContextSupplier(Protocol):
    async def fetch(self, user_id: Optional[str], organization_id: Optional[str]) -> ContextData:
        ...


def format_embeddings(embeddings: List[Dict[str, Any]], content_type: str) -> str:
    relevant = [e for e in embeddings or [] if isinstance(e, dict) and e.get("content_type") == content_type]
    if not relevant:
        return ""
    joined = "\n\n---\n\n".join(str(e.get("content") or "") for e in relevant)
    return joined[:_SECTION_LIMIT]


def format_top_posts(posts: List[Dict[str, Any]]) -> str:
    if not posts:
        return ""
    lines: List[str] = []
    for post in posts[:_TOP_POSTS]:
        content = str(post.get("post_content") or "")[:100]
        rate = post.get("engagement_rate")
        try:
            rate_label = f"{float(rate):.1f}"
        except (TypeError, ValueError):
            rate_label = "n/a"
        lines.append(f'Post: "{content}..." (Engagement: {rate_label}%)')
    return "Top Performing Posts:\n" + "\n".join(lines)


def context_from_payload(data: Dict[str, Any]) -> ContextData:
    """Turn the analytics service payload into prompt-ready text blocks."""

    embeddings = data.get("embeddings") or []
    top_posts = data.get("topPosts") or []
    return ContextData(
        summary=format_embeddings(embeddings, "summary") or None,
        demographic_data=format_embeddings(embeddings, "demographic_data") or None,
        recent_posts=format_embeddings(embeddings, "post_performance") or None,
        engagement_patterns=format_top_posts(top_posts) or None,
    )


class HttpContextSupplier:
    """Fetches organization analytics from the embeddings service."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        retry = Retry(total=2, backoff_factor=0.3, status_forcelist=(502, 503, 504), allowed_methods=frozenset(["GET"]))
        session.mount("http://", HTTPAdapter(max_retries=retry))
        session.mount("https://", HTTPAdapter(max_retries=retry))
        return session

    def _fetch_sync(self, user_id: str, organization_id: str) -> ContextData:
        url = f"{self.base_url}/api/embeddings/organization/{user_id}/{organization_id}/context"
        resp = self._session.get(url, timeout=_CONTEXT_TIMEOUT)
        if resp.status_code >= 400:
            logger.warning(
                "context_fetch_failed",
                extra={"status": resp.status_code, "organization_id": organization_id},
            )
            return ContextData()
        context = context_from_payload(resp.json() or {})
        logger.info(
            "context_fetched",
            extra={
                "organization_id": organization_id,
                "summary_chars": len(context.summary or ""),
                "posts_chars": len(context.recent_posts or ""),
            },
        )
        return context

    async def fetch(self, user_id: Optional[str], organization_id: Optional[str]) -> ContextData:
        if not user_id or not organization_id:
            return ContextData()
        return await asyncio.to_thread(self._fetch_sync, user_id, organization_id)


class InMemoryContextSupplier:
    """Context registered per (user, organization); used when no service is configured."""

    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str], ContextData] = {}
        self._lock = RLock()

    def put(self, user_id: str, organization_id: str, context: ContextData) -> ContextData:
        with self._lock:
            self._data[(user_id, organization_id)] = context
            return context

    async def fetch(self, user_id: Optional[str], organization_id: Optional[str]) -> ContextData:
        with self._lock:
            return self._data.get((user_id or "", organization_id or ""), ContextData())


_supplier: Optional[ContextSupplier] = None


def get_context_supplier() -> ContextSupplier:
    global _supplier
    if _supplier is None:
        if _CONTEXT_BASE_URL:
            _supplier = HttpContextSupplier(_CONTEXT_BASE_URL)
        else:
            _supplier = InMemoryContextSupplier()
    return _supplier

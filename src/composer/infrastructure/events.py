"""Thread and draft lifecycle events published to Redis pub/sub.

Publishing is optional: without ``REDIS_URL`` every call is a no-op, and a
broken connection only drops events, it never fails the caller.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "composer.events"

THREAD_CREATED = "thread_created"
MESSAGE_SAVED = "message_saved"
DRAFT_VERSION_SAVED = "draft_version_saved"


def channel_for(event_type: str) -> str:
    return f"{CHANNEL_PREFIX}.{event_type}"


def envelope(event_type: str, payload: Dict[str, Any]) -> str:
    body = {
        "type": event_type,
        "published_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "payload": payload,
    }
    return json.dumps(body, default=str)


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[redis.Redis] = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            logger.debug("redis_connect_failed", extra={"err": str(exc)})
            self._client = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        if not self._client:
            self._connect()
        if not self._client:
            return False
        channel = channel_for(event_type)
        try:
            self._client.publish(channel, envelope(event_type, payload))
        except Exception as exc:
            logger.warning("event_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None
            return False
        return True


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> bool:
    """Publish ``payload`` on ``composer.events.<event_type>``; ``True`` when delivered."""
    publisher = _get_publisher()
    if not publisher:
        return False
    return publisher.publish(event_type, payload)

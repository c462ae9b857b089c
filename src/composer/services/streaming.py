from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Iterable


def iter_as_async(it: Iterable[Any]) -> AsyncIterator[Any]:
    async def gen() -> AsyncIterator[Any]:
        for x in it:
            yield x

    return gen()


async def tokens_only(stream: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[str]:
    """Unwrap ``{"token": ...}`` frames produced by the local client."""
    async for frame in stream:
        token = frame.get("token") if isinstance(frame, dict) else frame
        if token:
            yield str(token)


def ndjson_line(event: str, **payload: Any) -> str:
    body = {"event": event}
    body.update(payload)
    return json.dumps(body, ensure_ascii=False) + "\n"

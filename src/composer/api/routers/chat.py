from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from ...domain.chat_models import ChatMessage, MessageCreate, Thread, ThreadCreate, ThreadWithMessages
from ...services.chat_engine import ConversationEngine, StreamCallbacks, StreamInProgress
from ...services.engine_registry import get_engine_registry
from ...services.streaming import ndjson_line

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/threads", tags=["threads"])

_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def require_engine(thread_id: str) -> ConversationEngine:
    engine = get_engine_registry().get(thread_id)
    if engine is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return engine


def stream_turn(
    engine: ConversationEngine,
    send: Callable[[StreamCallbacks], Awaitable[Optional[ChatMessage]]],
) -> StreamingResponse:
    """Run one engine turn and relay its callbacks as NDJSON lines."""

    # Claimed synchronously; released once the body has been streamed
    try:
        engine.reserve()
    except StreamInProgress:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A response is already streaming")

    async def event_stream() -> AsyncIterator[str]:
        queue: asyncio.Queue[Optional[str]] = asyncio.Queue()

        def emit(event: str, **payload: Any) -> None:
            queue.put_nowait(ndjson_line(event, **payload))

        callbacks = StreamCallbacks(
            on_draft_stream=lambda content, intent: emit("draft_stream", content=content, intent=intent),
            on_draft_stream_complete=lambda content, intent, mid: emit(
                "draft_stream_complete", content=content, intent=intent, message_id=mid
            ),
            on_ai_message_complete=lambda content, intent, mid: emit(
                "message_complete", content=content, intent=intent, message_id=mid
            ),
            on_transcript_update=lambda message: emit("transcript", message=message.model_dump()),
            on_error=lambda message: emit("error", message=message),
        )

        async def run() -> None:
            try:
                result = await send(callbacks)
                emit("done", message=result.model_dump() if result else None, error=engine.error)
            except Exception as exc:
                logger.exception("Conversation turn failed thread_id=%s", engine.thread_id)
                emit("error", message=str(exc))
                emit("done", message=None, error=str(exc))
            finally:
                queue.put_nowait(None)

        try:
            task = asyncio.create_task(run())
            while True:
                line = await queue.get()
                if line is None:
                    break
                yield line
            await task
        finally:
            engine.release()

    return StreamingResponse(
        event_stream(),
        media_type="application/x-ndjson",
        headers=_STREAM_HEADERS,
        background=BackgroundTask(engine.release),
    )


@router.post("", response_model=Thread, status_code=status.HTTP_201_CREATED)
def create_thread(req: ThreadCreate) -> Thread:
    store = get_engine_registry().store
    return store.create_thread(title=req.title, user_id=req.user_id, organization_id=req.organization_id)


@router.get("/{thread_id}", response_model=ThreadWithMessages)
def get_thread(thread_id: str) -> ThreadWithMessages:
    registry = get_engine_registry()
    thread = registry.store.get_thread(thread_id)
    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found")
    engine = registry.get(thread_id)
    messages = list(engine.messages) if engine else registry.store.list_messages(thread_id)
    return ThreadWithMessages(thread=thread, messages=messages)


@router.post("/{thread_id}/messages")
async def post_message(thread_id: str, req: MessageCreate) -> StreamingResponse:
    engine = require_engine(thread_id)
    if not req.content.strip():
        raise HTTPException(status_code=400, detail="content cannot be empty")
    return stream_turn(engine, lambda callbacks: engine.send_message(req.content, intent=req.intent, callbacks=callbacks))


@router.delete("/{thread_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_message(thread_id: str, message_id: str) -> None:
    registry = get_engine_registry()
    engine = require_engine(thread_id)
    removed = engine.remove_message(message_id)
    removed = registry.store.delete_message(thread_id, message_id) or removed
    if not removed:
        raise HTTPException(status_code=404, detail="Message not found")


@router.delete("/{thread_id}/messages", status_code=status.HTTP_204_NO_CONTENT)
def clear_messages(thread_id: str) -> None:
    engine = require_engine(thread_id)
    engine.clear()
    get_engine_registry().store.clear_messages(thread_id)

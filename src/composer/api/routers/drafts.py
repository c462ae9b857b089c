from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse

from ...domain.chat_models import RangeEditCreate, RevertRequest
from ...domain.drafts import Draft, DraftNotFound
from ...services import draft_versions
from .chat import require_engine, stream_turn

router = APIRouter(prefix="/threads/{thread_id}/drafts", tags=["drafts"])


def _draft_payload(draft: Draft) -> Dict[str, Any]:
    payload = draft.as_dict()
    payload["summary"] = draft_versions.version_summary(draft)
    payload["has_multiple_versions"] = draft_versions.has_multiple_versions(draft)
    payload["display_title"] = draft.title or draft_versions.draft_title(draft)
    return payload


def _require_draft(thread_id: str, draft_id: str) -> Draft:
    draft = require_engine(thread_id).drafts.get(draft_id)
    if draft is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    return draft


@router.get("")
def list_drafts(thread_id: str) -> List[Dict[str, Any]]:
    engine = require_engine(thread_id)
    return [_draft_payload(d) for d in engine.drafts.list()]


@router.get("/{draft_id}")
def get_draft(thread_id: str, draft_id: str) -> Dict[str, Any]:
    return _draft_payload(_require_draft(thread_id, draft_id))


@router.get("/{draft_id}/versions/{version}")
def get_version(thread_id: str, draft_id: str, version: int) -> Dict[str, Any]:
    draft = _require_draft(thread_id, draft_id)
    found = draft_versions.get_version(draft, version)
    if found is None:
        raise HTTPException(status_code=404, detail="Version not found")
    payload = found.as_dict()
    payload["title"] = draft_versions.draft_title(draft, version)
    return payload


@router.post("/{draft_id}/revert")
def revert_draft(thread_id: str, draft_id: str, req: RevertRequest) -> Dict[str, Any]:
    engine = require_engine(thread_id)
    try:
        draft = engine.drafts.revert(draft_id, req.version)
    except DraftNotFound:
        raise HTTPException(status_code=404, detail="Draft not found")
    return _draft_payload(draft)


@router.get("/{draft_id}/diff")
def diff_draft(
    thread_id: str,
    draft_id: str,
    from_version: int = Query(..., ge=1),
    to_version: int = Query(..., ge=1),
) -> Dict[str, Any]:
    draft = _require_draft(thread_id, draft_id)
    lines = draft_versions.diff_versions(draft, from_version, to_version)
    if lines is None:
        raise HTTPException(status_code=404, detail="Version not found")
    return {"draft_id": draft.id, "from_version": from_version, "to_version": to_version, "diff": lines}


@router.post("/{draft_id}/range-edit")
async def range_edit(thread_id: str, draft_id: str, req: RangeEditCreate) -> StreamingResponse:
    engine = require_engine(thread_id)
    _require_draft(thread_id, draft_id)
    return stream_turn(
        engine,
        lambda callbacks: engine.send_range_edit(req.selected_text, req.instruction, draft_id=draft_id, callbacks=callbacks),
    )

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from ...services.model_router import ModelRouter
from ...services.telemetry_sink import list_recent_events, routing_summary

router = APIRouter(prefix="/diag", tags=["diagnostics"])


class RoutingDiagnostics(BaseModel):
    events: List[Dict[str, Any]]
    outcomes: Dict[str, Dict[str, int]]


def _describe(purpose: str, model_router: ModelRouter) -> Dict[str, Optional[str]]:
    selection = model_router.maybe_select_provider(purpose)
    if selection is None:
        return {"provider": None, "model": None}
    return {"provider": selection.name, "model": selection.model}


@router.get("/llm")
def diag_llm() -> Dict[str, Any]:
    model_router = ModelRouter()
    generation = _describe("generation", model_router)
    classification = _describe("classification", model_router)
    return {
        "generation": generation,
        "classification": classification,
        # Without a provider the engine streams the deterministic fallback reply
        "ready": generation["provider"] is not None,
    }


@router.get("/routing", response_model=RoutingDiagnostics)
def diag_routing(limit: int = Query(25, ge=1, le=200)) -> RoutingDiagnostics:
    events = list_recent_events(limit, name="routing_resolved")
    return RoutingDiagnostics(events=[e.as_dict() for e in events], outcomes=routing_summary(events))

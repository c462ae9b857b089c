from __future__ import annotations

from typing import Optional

from fastapi import APIRouter

from ...domain.chat_models import ClassifyRequest, ClassifyResponse, normalize_intent
from ...services.response_classifier import ResponseClassifier

router = APIRouter(tags=["classify"])

_classifier: Optional[ResponseClassifier] = None


def get_response_classifier() -> ResponseClassifier:
    global _classifier
    if _classifier is None:
        _classifier = ResponseClassifier()
    return _classifier


def set_response_classifier(classifier: Optional[ResponseClassifier]) -> None:
    global _classifier
    _classifier = classifier


@router.post("/classify-response", response_model=ClassifyResponse)
async def classify_response(req: ClassifyRequest) -> ClassifyResponse:
    label = await get_response_classifier().classify(req.content, normalize_intent(req.intent))
    return ClassifyResponse(responseType=label)

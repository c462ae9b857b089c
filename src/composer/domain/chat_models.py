from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["user", "assistant"]
Intent = Literal["draft", "edit", "ideate", "feedback", "general"]
ResponseType = Literal["draft", "question"]
ClassificationLabel = Literal["draft", "question", "chat"]

INTENTS: tuple[str, ...] = ("draft", "edit", "ideate", "feedback", "general")
# Intents whose responses stream to the draft panel until classified
DRAFT_INTENTS = frozenset({"draft", "edit"})


def normalize_intent(value: Optional[str]) -> str:
    intent = (value or "").strip().lower()
    if intent == "chat":
        return "general"
    return intent if intent in INTENTS else "general"


class ChatMessage(BaseModel):
    message_id: str
    role: Role
    content: str = ""
    raw_content: Optional[str] = None
    created_at: str
    intent: Optional[Intent] = None
    draft_content: Optional[str] = None
    draft_id: Optional[str] = None
    draft_version: Optional[int] = None
    is_streaming_progress: bool = False
    is_follow_up_question: bool = False
    is_error: bool = False

    def generator_content(self) -> str:
        return self.raw_content if self.raw_content is not None else self.content


class ContextData(BaseModel):
    summary: Optional[str] = None
    demographic_data: Optional[str] = None
    recent_posts: Optional[str] = None
    engagement_patterns: Optional[str] = None

    def is_empty(self) -> bool:
        return not any((self.summary, self.demographic_data, self.recent_posts, self.engagement_patterns))


class ThreadCreate(BaseModel):
    title: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None


class Thread(BaseModel):
    thread_id: str
    title: str
    created_at: str
    updated_at: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)
    intent: Optional[Intent] = None


class ThreadWithMessages(BaseModel):
    thread: Thread
    messages: List[ChatMessage]


class ClassifyRequest(BaseModel):
    content: str = Field(min_length=1)
    intent: str


class ClassifyResponse(BaseModel):
    responseType: ClassificationLabel


class RangeEditCreate(BaseModel):
    selected_text: str = Field(min_length=1)
    instruction: str = Field(min_length=1)


class RevertRequest(BaseModel):
    version: int

from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class MediaPayload(BaseModel):
    url: Optional[str] = None
    data: Optional[str] = None  # base64
    mimetype: str = "application/octet-stream"
    filename: Optional[str] = None


class SendMessageRequest(BaseModel):
    to: str
    kind: Literal["message", "media", "poll"] = "message"
    message: Optional[str] = None
    media: Optional[MediaPayload] = None
    question: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    intro_text: Optional[str] = None
    allow_multiple_answers: bool = False
    correlation_id: Optional[str] = None


class SendPollRequest(BaseModel):
    to: str
    question: str
    options: List[str]
    intro_text: Optional[str] = None
    allow_multiple_answers: bool = False
    correlation_id: Optional[str] = None


class SendConfirmationRequest(BaseModel):
    to: str
    order_id: str
    question: Optional[str] = None
    options: List[str] = Field(default_factory=lambda: ["Yes", "No"])
    intro_text: Optional[str] = None


class SendResponse(BaseModel):
    success: bool
    status: Literal["sent", "queued"]
    message_id: Optional[str] = None
    queue_id: Optional[UUID] = None
    consumed: int = 0
    remaining: Optional[int] = None

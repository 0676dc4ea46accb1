from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from flowdesk.schemas.send import MediaPayload


class ScheduleRequest(BaseModel):
    schedule_name: str
    recipients: List[str] = Field(min_length=1)
    send_at: datetime
    kind: Literal["message", "media", "poll"] = "message"
    message: Optional[str] = None
    media: Optional[MediaPayload] = None
    question: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    intro_text: Optional[str] = None
    correlation_id: Optional[str] = None


class ScheduleResponse(BaseModel):
    success: bool
    schedule_name: str
    scheduled: int


class ScheduleSummaryItem(BaseModel):
    schedule_name: str
    send_at: datetime
    total: int
    pending: int = 0
    sent: int = 0
    queued: int = 0
    failed: int = 0


class ScheduleSummaryResponse(BaseModel):
    count: int
    schedules: List[ScheduleSummaryItem]

from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class AssignRequest(BaseModel):
    agent_id: Optional[UUID] = None


class AssignResponse(BaseModel):
    success: bool
    chat_id: str
    status: str
    agent_id: Optional[UUID] = None

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class OtpSendRequest(BaseModel):
    phone: str
    template: Optional[str] = None


class OtpSendResponse(BaseModel):
    success: bool
    phone: str
    expires_at: datetime
    message_id: Optional[str] = None


class OtpVerifyRequest(BaseModel):
    phone: str
    code: str


class OtpVerifyResponse(BaseModel):
    success: bool
    message: str

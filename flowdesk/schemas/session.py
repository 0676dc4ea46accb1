from typing import Optional

from pydantic import BaseModel


class SessionStatusResponse(BaseModel):
    tenant_id: str
    status: str
    ready: bool
    qr_available: bool


class QrResponse(BaseModel):
    tenant_id: str
    status: str
    qr: Optional[str] = None
    message: Optional[str] = None


class TransportEventRequest(BaseModel):
    type: str
    data: dict = {}

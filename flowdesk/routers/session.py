from fastapi import APIRouter, Depends, Header, HTTPException
from typing import Optional

from flowdesk.config import settings
from flowdesk.models import Tenant
from flowdesk.routers.deps import ensure_tenant_access, get_current_tenant, get_runtime
from flowdesk.runtime import Runtime
from flowdesk.schemas.session import QrResponse, SessionStatusResponse, TransportEventRequest
from flowdesk.transport.base import TransportEvent

router = APIRouter()


@router.get("/status/{tenant_id}", response_model=SessionStatusResponse)
async def session_status(
    tenant_id: str,
    tenant: Tenant = Depends(get_current_tenant),
    runtime: Runtime = Depends(get_runtime),
):
    ensure_tenant_access(tenant_id, tenant)
    status = runtime.registry.get_status(tenant_id)
    return SessionStatusResponse(tenant_id=tenant_id, **status)


@router.get("/qr/{tenant_id}", response_model=QrResponse)
async def session_qr(
    tenant_id: str,
    tenant: Tenant = Depends(get_current_tenant),
    runtime: Runtime = Depends(get_runtime),
):
    """Start the session if needed and return the pairing QR when there is one."""
    ensure_tenant_access(tenant_id, tenant)
    runtime.registry.get_or_create(tenant_id)
    status = runtime.registry.get_status(tenant_id)

    if status["ready"]:
        return QrResponse(tenant_id=tenant_id, status=status["status"], message="Session already connected")
    qr = runtime.registry.get_qr(tenant_id)
    if not qr:
        return QrResponse(tenant_id=tenant_id, status=status["status"], message="QR not generated yet, retry shortly")
    return QrResponse(tenant_id=tenant_id, status=status["status"], qr=qr)


@router.post("/webhook/{tenant_id}/events")
async def transport_events(
    tenant_id: str,
    request: TransportEventRequest,
    x_gateway_token: Optional[str] = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    """Lifecycle and inbound events posted by the WhatsApp gateway."""
    if settings.gateway_webhook_secret and x_gateway_token != settings.gateway_webhook_secret:
        raise HTTPException(status_code=401, detail="Invalid gateway token")

    await runtime.registry.dispatch(tenant_id, TransportEvent(type=request.type, data=request.data))
    return {"success": True}

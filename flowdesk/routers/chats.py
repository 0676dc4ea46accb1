from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from flowdesk.database import get_db
from flowdesk.models import Tenant
from flowdesk.routers.deps import get_current_tenant, get_runtime
from flowdesk.runtime import Runtime
from flowdesk.schemas.chat import AssignRequest, AssignResponse

router = APIRouter()


@router.post("/chats/{chat_id}/assign", response_model=AssignResponse)
async def assign_chat(
    chat_id: str,
    request: AssignRequest,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    """Assign to the given agent, or to the next available one."""
    result = await runtime.assignment.assign_chat(db, tenant.tenant_id, chat_id, request.agent_id)

    if not result.ok:
        raise HTTPException(status_code=result.http_status, detail=result.error)

    chat = result.value
    runtime.inactivity.reset(tenant.tenant_id, chat.chat_id, assigned=True)
    return AssignResponse(success=True, chat_id=chat.chat_id, status=chat.status, agent_id=chat.agent_id)

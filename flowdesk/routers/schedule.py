from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from flowdesk.database import get_db
from flowdesk.models import Tenant
from flowdesk.routers.deps import get_current_tenant
from flowdesk.schemas.schedule import ScheduleRequest, ScheduleResponse, ScheduleSummaryResponse
from flowdesk.services.errors import MalformedPayloadError, QuotaError
from flowdesk.services.outbound_service import OutboundPayload
from flowdesk.services.scheduled_message_service import schedule_messages, schedule_summary

router = APIRouter()


@router.post("/schedule", response_model=ScheduleResponse)
def create_schedule(
    request: ScheduleRequest,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    payload = OutboundPayload(
        kind=request.kind,
        message=request.message,
        media=request.media.model_dump() if request.media else None,
        question=request.question,
        options=request.options,
        intro_text=request.intro_text,
        correlation_id=request.correlation_id,
    )
    try:
        rows = schedule_messages(
            db, tenant.tenant_id, request.schedule_name, request.recipients, payload, request.send_at
        )
    except QuotaError as e:
        raise HTTPException(status_code=402, detail=e.message)
    except MalformedPayloadError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return ScheduleResponse(success=True, schedule_name=request.schedule_name, scheduled=len(rows))


@router.get("/schedule/summary", response_model=ScheduleSummaryResponse)
def get_schedule_summary(tenant: Tenant = Depends(get_current_tenant), db: Session = Depends(get_db)):
    schedules = schedule_summary(db, tenant.tenant_id)
    return ScheduleSummaryResponse(count=len(schedules), schedules=schedules)

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from flowdesk.database import get_db
from flowdesk.models import Tenant
from flowdesk.routers.deps import get_current_tenant, get_runtime
from flowdesk.runtime import Runtime
from flowdesk.schemas.otp import OtpSendRequest, OtpSendResponse, OtpVerifyRequest, OtpVerifyResponse
from flowdesk.services.errors import DeliveryError, OtpError, QuotaError, SessionNotReadyError
from flowdesk.services.otp_service import send_otp, verify_otp

router = APIRouter(prefix="/otp")


@router.post("/send", response_model=OtpSendResponse)
async def otp_send(
    request: OtpSendRequest,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        result = await send_otp(db, runtime.registry, runtime.outbound, tenant.tenant_id, request.phone, request.template)
    except OtpError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except QuotaError as e:
        raise HTTPException(status_code=402, detail=e.message)
    except SessionNotReadyError as e:
        raise HTTPException(status_code=503, detail=e.message)
    except DeliveryError as e:
        raise HTTPException(status_code=502, detail={"error": e.message, "consumed": e.consumed})

    return OtpSendResponse(success=True, **result)


@router.post("/verify", response_model=OtpVerifyResponse)
def otp_verify(
    request: OtpVerifyRequest,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    result = verify_otp(db, tenant.tenant_id, request.phone, request.code)
    if not result.ok:
        raise HTTPException(status_code=result.http_status, detail=result.error)
    return OtpVerifyResponse(success=True, message=result.value)

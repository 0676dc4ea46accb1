from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from flowdesk.database import get_db
from flowdesk.models import Tenant
from flowdesk.routers.deps import get_current_tenant, get_runtime
from flowdesk.runtime import Runtime
from flowdesk.schemas.send import SendConfirmationRequest, SendMessageRequest, SendPollRequest, SendResponse
from flowdesk.services.errors import DeliveryError, MalformedPayloadError, QuotaError
from flowdesk.services.outbound_service import KIND_POLL, OutboundPayload

router = APIRouter()

DEFAULT_CONFIRMATION_QUESTION = "Please confirm your order"


async def _send_or_queue(
    runtime: Runtime,
    db: Session,
    tenant: Tenant,
    to: str,
    payload: OutboundPayload,
    response: Response,
) -> SendResponse:
    try:
        outcome = await runtime.outbound.send_or_queue(db, tenant.tenant_id, to, payload)
    except QuotaError as e:
        raise HTTPException(status_code=402, detail=e.message)
    except MalformedPayloadError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except DeliveryError as e:
        raise HTTPException(status_code=502, detail={"error": e.message, "consumed": e.consumed})

    if outcome.status == "queued":
        response.status_code = 202

    return SendResponse(
        success=True,
        status=outcome.status,
        message_id=outcome.transport_message_id,
        queue_id=outcome.queue_id,
        consumed=outcome.consumed,
        remaining=outcome.remaining,
    )


@router.post("/send-message", response_model=SendResponse)
async def send_message(
    request: SendMessageRequest,
    response: Response,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    """Send text, media or a poll now, or queue it until the session is ready."""
    payload = OutboundPayload(
        kind=request.kind,
        message=request.message,
        media=request.media.model_dump() if request.media else None,
        question=request.question,
        options=request.options,
        intro_text=request.intro_text,
        allow_multiple_answers=request.allow_multiple_answers,
        correlation_id=request.correlation_id,
    )
    return await _send_or_queue(runtime, db, tenant, request.to, payload, response)


@router.post("/send-poll", response_model=SendResponse)
async def send_poll(
    request: SendPollRequest,
    response: Response,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    payload = OutboundPayload(
        kind=KIND_POLL,
        question=request.question,
        options=request.options,
        intro_text=request.intro_text,
        allow_multiple_answers=request.allow_multiple_answers,
        correlation_id=request.correlation_id,
    )
    return await _send_or_queue(runtime, db, tenant, request.to, payload, response)


@router.post("/send-confirmation", response_model=SendResponse)
async def send_confirmation(
    request: SendConfirmationRequest,
    response: Response,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    """Yes/No poll whose answer is tied back to the order id."""
    payload = OutboundPayload(
        kind=KIND_POLL,
        question=request.question or DEFAULT_CONFIRMATION_QUESTION,
        options=request.options,
        intro_text=request.intro_text,
        correlation_id=f"confirm:{request.order_id}",
    )
    return await _send_or_queue(runtime, db, tenant, request.to, payload, response)

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from flowdesk.database import get_db
from flowdesk.logging_config import get_logger
from flowdesk.services.chat_service import get_tenant
from flowdesk.services.event_bus import DomainEvent

router = APIRouter()
logger = get_logger("realtime")

MAX_PENDING_EVENTS = 200


@router.websocket("/ws/{tenant_id}")
async def tenant_events(
    websocket: WebSocket,
    tenant_id: str,
    api_key: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Stream the tenant's events (QR, ready, inbound messages, votes, chat changes)."""
    tenant = get_tenant(db, tenant_id)
    if tenant is None or not api_key or tenant.api_key != api_key:
        await websocket.close(code=1008)
        return

    runtime = websocket.app.state.runtime
    queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)

    def forward(event: DomainEvent) -> None:
        try:
            queue.put_nowait(event.to_dict())
        except asyncio.QueueFull:
            logger.warning(f"Dropping realtime event for slow client: {event.event_type}")

    runtime.bus.subscribe_tenant(tenant_id, forward)
    try:
        await websocket.accept()
    except Exception:
        runtime.bus.unsubscribe_tenant(tenant_id, forward)
        raise

    async def _send_loop() -> None:
        while True:
            payload = await queue.get()
            await websocket.send_text(json.dumps(payload, default=str))

    async def _receive_loop() -> None:
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(_send_loop()), asyncio.create_task(_receive_loop())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"Realtime connection closed: {error}", extra={"context": {"tenant_id": tenant_id}})
    finally:
        for task in tasks:
            task.cancel()
        runtime.bus.unsubscribe_tenant(tenant_id, forward)

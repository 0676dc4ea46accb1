from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from flowdesk.models import QueuedMessage

QUEUE_PENDING = "pending"
QUEUE_SENT = "sent"
QUEUE_FAILED = "failed"


def enqueue_message(
    db: Session,
    *,
    tenant_id: str,
    recipient: str,
    kind: str,
    payload_json: dict[str, Any],
) -> QueuedMessage:
    row = QueuedMessage(
        tenant_id=tenant_id,
        recipient=recipient,
        kind=kind,
        payload_json=payload_json,
        status=QUEUE_PENDING,
        consumed_count=0,
        created_at=datetime.now(timezone.utc),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def list_pending(db: Session, tenant_id: str) -> list[QueuedMessage]:
    return (
        db.query(QueuedMessage)
        .filter(QueuedMessage.tenant_id == tenant_id, QueuedMessage.status == QUEUE_PENDING)
        .order_by(QueuedMessage.created_at, QueuedMessage.id)
        .all()
    )


def mark_queue_status(
    db: Session,
    *,
    queue_id,
    status: str,
    consumed_count: int = 0,
    transport_message_id: str | None = None,
    error: str | None = None,
) -> bool:
    """Move a pending item to its terminal status. False if it already left pending."""
    result = db.execute(
        update(QueuedMessage)
        .where(QueuedMessage.id == queue_id, QueuedMessage.status == QUEUE_PENDING)
        .values(
            status=status,
            consumed_count=consumed_count,
            transport_message_id=transport_message_id,
            error=error,
            processed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1

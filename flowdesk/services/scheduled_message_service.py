from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flowdesk.logging_config import get_logger
from flowdesk.models import ScheduledMessage
from flowdesk.services import quota_service
from flowdesk.services.errors import FlowdeskError
from flowdesk.services.outbound_service import OutboundPayload

logger = get_logger("scheduled_message_service")

STATUSES = ("pending", "sent", "queued", "failed")


def schedule_messages(
    db: Session,
    tenant_id: str,
    schedule_name: str,
    recipients: list[str],
    payload: OutboundPayload,
    send_at: datetime,
) -> list[ScheduledMessage]:
    """Store one scheduled item per recipient.

    Quota is checked for the whole batch but nothing is consumed until each
    item is actually delivered.
    """
    payload.validate()
    recipients = [r.strip() for r in recipients if r and r.strip()]
    if not recipients:
        raise ValueError("At least one recipient is required")
    quota_service.ensure_quota(db, tenant_id, payload.units() * len(recipients))

    if send_at.tzinfo is None:
        send_at = send_at.replace(tzinfo=timezone.utc)

    rows = [
        ScheduledMessage(
            tenant_id=tenant_id,
            schedule_name=schedule_name,
            recipient=recipient,
            kind=payload.kind,
            payload_json=payload.to_dict(),
            send_at=send_at,
            status="pending",
        )
        for recipient in recipients
    ]
    db.add_all(rows)
    db.commit()
    logger.info(
        "Messages scheduled",
        extra={"context": {"tenant_id": tenant_id, "schedule_name": schedule_name, "count": len(rows)}},
    )
    return rows


async def dispatch_due(session_factory, outbound, now: Optional[datetime] = None) -> dict:
    """Hand every due item to send_or_queue."""
    now = now or datetime.now(timezone.utc)
    counts = {"sent": 0, "queued": 0, "failed": 0}
    db = session_factory()
    try:
        due = (
            db.query(ScheduledMessage)
            .filter(ScheduledMessage.status == "pending", ScheduledMessage.send_at <= now)
            .order_by(ScheduledMessage.send_at, ScheduledMessage.created_at)
            .all()
        )
        for item in due:
            try:
                payload = OutboundPayload.from_dict(item.kind, item.payload_json)
                outcome = await outbound.send_or_queue(db, item.tenant_id, item.recipient, payload)
                item.status = outcome.status
                item.transport_message_id = outcome.transport_message_id
            except FlowdeskError as e:
                item.status = "failed"
                item.error = e.message
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(
                    f"Scheduled message failed on database error: {e}",
                    extra={"context": {"tenant_id": item.tenant_id, "recipient": item.recipient}},
                )
                item.status = "failed"
                item.error = str(e)
            item.processed_at = datetime.now(timezone.utc)
            db.commit()
            counts[item.status] += 1
    finally:
        db.close()

    if any(counts.values()):
        logger.info("Scheduled messages dispatched", extra={"context": counts})
    return counts


def schedule_summary(db: Session, tenant_id: str) -> list[dict]:
    rows = (
        db.query(ScheduledMessage)
        .filter(ScheduledMessage.tenant_id == tenant_id)
        .order_by(ScheduledMessage.send_at, ScheduledMessage.schedule_name)
        .all()
    )
    summary: "OrderedDict[str, dict]" = OrderedDict()
    for row in rows:
        entry = summary.setdefault(
            row.schedule_name,
            {"schedule_name": row.schedule_name, "send_at": row.send_at, "total": 0, **{s: 0 for s in STATUSES}},
        )
        entry["total"] += 1
        entry[row.status] = entry.get(row.status, 0) + 1
    return list(summary.values())

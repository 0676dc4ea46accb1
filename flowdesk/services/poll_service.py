from typing import Optional

from sqlalchemy.orm import Session

from flowdesk.logging_config import get_logger
from flowdesk.services import event_bus as events
from flowdesk.services.event_bus import EventBus
from flowdesk.services.sent_message_service import (
    extract_order_number,
    extract_parent_message_id,
    extract_selected,
    extract_voter,
    map_selected_labels,
    record_answer,
    record_poll_vote,
    resolve_poll_by_source_id,
)

logger = get_logger("poll_service")


async def handle_vote_update(db: Session, bus: EventBus, tenant_id: str, vote: dict) -> Optional[dict]:
    """Record the first answer to a poll. Later votes for the same poll are dropped.

    Returns the published event data, or None when the vote was ignored.
    """
    parent_id = extract_parent_message_id(vote)
    if not parent_id:
        return None

    sent = resolve_poll_by_source_id(db, parent_id, tenant_id=tenant_id)
    if sent is None:
        logger.info("Vote for unknown poll", extra={"context": {"tenant_id": tenant_id, "parent_id": parent_id}})
        return None
    if sent.answered:
        return None

    selected = extract_selected(vote)
    if not selected:
        # deselecting every option is not an answer
        return None

    labels = map_selected_labels(selected, (sent.payload or {}).get("options"))
    correlation_id = sent.correlation_id or (sent.payload or {}).get("correlation_id")
    order_number = extract_order_number(correlation_id)

    if not record_answer(db, sent.id, labels, selected, order_number):
        logger.info("Poll already answered, vote dropped", extra={"context": {"sent_message_id": str(sent.id)}})
        return None

    voter = extract_voter(vote)
    if not voter and str(sent.recipient).endswith("@c.us"):
        voter = sent.recipient
    if voter:
        record_poll_vote(
            db, sent=sent, voter=voter, labels=labels, selected=selected, order_number=order_number
        )

    data = {
        "correlation_id": correlation_id,
        "order_number": order_number,
        "to": sent.recipient,
        "message_id": sent.transport_message_id,
        "labels": labels,
        "voter": voter,
    }
    await bus.publish(tenant_id, events.POLL_VOTE, data)
    logger.info("Poll answer recorded", extra={"context": {"tenant_id": tenant_id, **data}})
    return data

"""Ledger of outbound messages and the answer-once lock for polls."""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flowdesk.database import insert_ignore
from flowdesk.logging_config import get_logger
from flowdesk.models import PollVote, SentMessage

logger = get_logger("sent_message_service")

ORDER_NUMBER_PATTERN = re.compile(r"(?:confirm:)?(\d+)", re.IGNORECASE)

PARENT_ID_PATHS = (
    ("pollCreationMessageKey", "_serialized"),
    ("pollCreationMessageKey", "id"),
    ("parentMsgKey", "_serialized"),
    ("parentMsgKey", "id"),
    ("quotedStanzaID",),
)

SELECTED_PATHS = (
    ("selectedOptions",),
    ("vote", "selectedOptions"),
    ("choices",),
    ("options",),
)

VOTER_KEYS = ("sender", "author", "from", "voterId", "participant")


def short_id(transport_message_id: Optional[str]) -> Optional[str]:
    """Last `_` separated segment of a serialized message id."""
    if not transport_message_id:
        return None
    return str(transport_message_id).split("_")[-1]


def _dig(data: Any, path: tuple) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def extract_parent_message_id(vote: dict) -> Optional[str]:
    for path in PARENT_ID_PATHS:
        value = _dig(vote, path)
        if value:
            return str(value)
    return None


def extract_selected(vote: dict) -> list:
    for path in SELECTED_PATHS:
        value = _dig(vote, path)
        if value:
            return value if isinstance(value, list) else [value]
    return []


def extract_voter(vote: dict) -> Optional[str]:
    for key in VOTER_KEYS:
        if vote.get(key):
            return str(vote[key])
    return None


def _option_name(option: Any) -> Optional[str]:
    if isinstance(option, dict):
        return option.get("name")
    return str(option) if option is not None else None


def map_selected_labels(selected: list, options: Optional[list]) -> list[str]:
    """Turn raw vote selections into option labels.

    A selection may be an object with a name, an index into the poll's
    options, or a bare string.
    """
    options = options or []
    labels = []
    for sel in selected:
        if isinstance(sel, dict) and sel.get("name"):
            label = sel["name"]
        elif isinstance(sel, int) and not isinstance(sel, bool) and 0 <= sel < len(options):
            label = _option_name(options[sel])
        elif isinstance(sel, str):
            label = sel
        else:
            label = str(sel)
        if label:
            labels.append(label)
    return labels


def extract_order_number(correlation_id: Optional[str]) -> Optional[str]:
    """First run of digits, with an optional `confirm:` prefix."""
    if not correlation_id:
        return None
    match = ORDER_NUMBER_PATTERN.search(str(correlation_id))
    return match.group(1) if match else None


def record_sent(
    db: Session,
    *,
    tenant_id: str,
    recipient: str,
    kind: str,
    transport_message_id: Optional[str],
    payload: dict,
    correlation_id: Optional[str] = None,
) -> bool:
    """Best-effort insert. A duplicate transport id is not an error."""
    values = {
        "id": uuid.uuid4(),
        "tenant_id": tenant_id,
        "recipient": recipient,
        "kind": kind,
        "transport_message_id": transport_message_id,
        "short_id": short_id(transport_message_id),
        "payload": payload,
        "correlation_id": correlation_id,
        "answered": False,
        "created_at": datetime.now(timezone.utc),
    }
    try:
        inserted = insert_ignore(db, SentMessage, values, ["transport_message_id"])
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "Failed to record sent message",
            extra={"context": {"tenant_id": tenant_id, "transport_message_id": transport_message_id, "error": str(exc)}},
        )
        return False

    if not inserted:
        logger.info(
            "Sent message already recorded",
            extra={"context": {"tenant_id": tenant_id, "transport_message_id": transport_message_id}},
        )
    return inserted


def resolve_poll_by_source_id(db: Session, raw_id: str, tenant_id: Optional[str] = None) -> Optional[SentMessage]:
    """Exact id, then id suffix, then short id.

    Some transports report truncated ids in vote events.
    """
    if not raw_id:
        return None

    query = db.query(SentMessage).filter(SentMessage.kind == "poll")
    if tenant_id:
        query = query.filter(SentMessage.tenant_id == tenant_id)

    sent = query.filter(SentMessage.transport_message_id == raw_id).first()
    if sent:
        return sent

    short = short_id(raw_id)
    sent = query.filter(SentMessage.transport_message_id.endswith(short, autoescape=True)).first()
    if sent:
        return sent

    return query.filter(SentMessage.short_id == short).first()


def record_answer(
    db: Session,
    sent_message_id,
    labels: list[str],
    raw: Any,
    order_number: Optional[str],
) -> bool:
    """Flip `answered` once. False means the poll was already answered."""
    result = db.execute(
        update(SentMessage)
        .where(SentMessage.id == sent_message_id, SentMessage.answered.is_not(True))
        .values(
            answered=True,
            answer={"labels": labels, "raw": raw, "order_number": order_number},
            answered_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def record_poll_vote(
    db: Session,
    *,
    sent: SentMessage,
    voter: str,
    labels: list[str],
    selected: list,
    order_number: Optional[str],
) -> bool:
    inserted = insert_ignore(
        db,
        PollVote,
        {
            "id": uuid.uuid4(),
            "tenant_id": sent.tenant_id,
            "chat_id": sent.recipient,
            "poll_message_id": sent.transport_message_id,
            "correlation_id": sent.correlation_id,
            "voter": voter,
            "option": ", ".join(labels),
            "selected": selected,
            "order_number": order_number,
            "source": "vote_update",
            "voted_at": datetime.now(timezone.utc),
        },
        ["tenant_id", "poll_message_id", "voter"],
    )
    db.commit()
    return inserted

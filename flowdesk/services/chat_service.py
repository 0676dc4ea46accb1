from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from flowdesk.logging_config import get_logger
from flowdesk.models import Agent, Chat, Message, Tenant
from flowdesk.services.state_machine import ChatStatus, close_chat, reopen_chat

logger = get_logger("chat_service")


def get_tenant(db: Session, tenant_id: str) -> Optional[Tenant]:
    return db.query(Tenant).filter(Tenant.tenant_id == tenant_id).first()


def get_chat(db: Session, tenant_id: str, chat_id: str) -> Optional[Chat]:
    return db.query(Chat).filter(Chat.tenant_id == tenant_id, Chat.chat_id == chat_id).first()


def get_or_create_chat(db: Session, tenant_id: str, chat_id: str, name: Optional[str] = None) -> Chat:
    """Find chat by (tenant, chat_id) or create a pending one."""
    chat = get_chat(db, tenant_id, chat_id)

    if not chat:
        chat = Chat(
            tenant_id=tenant_id,
            chat_id=chat_id,
            name=name,
            status=ChatStatus.PENDING.value,
            created_at=datetime.now(timezone.utc),
        )
        db.add(chat)
        db.flush()

    return chat


def touch_chat(db: Session, chat: Chat) -> Chat:
    """Record inbound activity; a closed chat is reopened."""
    if chat.status == ChatStatus.CLOSED.value:
        chat.status = reopen_chat(ChatStatus.CLOSED).value
        chat.closed_at = None
        chat.agent_id = None
        logger.info(f"Chat reopened: {chat.chat_id}", extra={"context": {"tenant_id": chat.tenant_id}})
    chat.last_activity_at = datetime.now(timezone.utc)
    db.flush()
    return chat


def mark_chat_closed(db: Session, chat: Chat) -> bool:
    if chat.status == ChatStatus.CLOSED.value:
        return False
    chat.status = close_chat(ChatStatus(chat.status)).value
    chat.closed_at = datetime.now(timezone.utc)
    db.flush()
    return True


def list_available_agents(db: Session, tenant_id: str) -> list[Agent]:
    """Active and online agents in roster order."""
    return (
        db.query(Agent)
        .filter(Agent.tenant_id == tenant_id, Agent.status == "active", Agent.online.is_(True))
        .order_by(Agent.created_at, Agent.id)
        .all()
    )


def save_message(
    db: Session,
    *,
    tenant_id: str,
    chat_id: str,
    direction: str,
    body: Optional[str],
    kind: str = "text",
    sender: Optional[str] = None,
    transport_message_id: Optional[str] = None,
    raw: Optional[dict] = None,
) -> Optional[Message]:
    """Append to message history. Returns None for an already stored transport id."""
    if transport_message_id:
        exists = db.query(Message.id).filter(Message.transport_message_id == transport_message_id).first()
        if exists:
            return None

    message = Message(
        tenant_id=tenant_id,
        chat_id=chat_id,
        direction=direction,
        sender=sender,
        kind=kind,
        body=body,
        transport_message_id=transport_message_id,
        raw=raw,
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def _serialized_id(value) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("_serialized") or value.get("id")
    return str(value) if value else None


def backfill_chats(db: Session, tenant_id: str, chats: list[dict]) -> int:
    """Upsert chat rows reported by the transport. Status is left untouched."""
    existing = {chat.chat_id: chat for chat in db.query(Chat).filter(Chat.tenant_id == tenant_id).all()}
    created = 0
    for item in chats or []:
        chat_id = _serialized_id(item.get("id"))
        if not chat_id:
            continue
        name = item.get("name")
        is_group = bool(item.get("isGroup", chat_id.endswith("@g.us")))
        chat = existing.get(chat_id)
        if chat is None:
            chat = Chat(
                tenant_id=tenant_id,
                chat_id=chat_id,
                name=name,
                is_group=is_group,
                status=ChatStatus.PENDING.value,
                created_at=datetime.now(timezone.utc),
            )
            db.add(chat)
            existing[chat_id] = chat
            created += 1
        else:
            chat.name = name or chat.name
            chat.is_group = is_group
    db.commit()
    logger.info(f"Backfilled chats for {tenant_id}", extra={"context": {"total": len(chats or []), "created": created}})
    return created

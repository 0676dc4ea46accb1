"""Entry points for inbound transport events."""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from flowdesk.logging_config import get_logger
from flowdesk.models import UserFlowState
from flowdesk.services import event_bus as events
from flowdesk.services.chat_service import get_chat, save_message
from flowdesk.services.event_bus import EventBus
from flowdesk.services.poll_service import handle_vote_update
from flowdesk.services.state_machine import ChatStatus

logger = get_logger("inbound_service")

NON_CONVERSATION_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")


@dataclass
class InboundMessage:
    tenant_id: str
    sender_id: Optional[str]
    body: str
    transport_message_id: Optional[str]
    from_me: bool
    kind: str
    timestamp: Any
    raw: dict

    @property
    def is_conversation(self) -> bool:
        return bool(self.sender_id) and not self.sender_id.endswith(NON_CONVERSATION_SUFFIXES)


def normalize_message(tenant_id: str, raw: dict) -> InboundMessage:
    message_id = raw.get("id")
    if isinstance(message_id, dict):
        message_id = message_id.get("_serialized") or message_id.get("id")
    return InboundMessage(
        tenant_id=tenant_id,
        sender_id=raw.get("from") or raw.get("chatId") or raw.get("sender"),
        body=str(raw.get("body") or raw.get("text") or ""),
        transport_message_id=str(message_id) if message_id else None,
        from_me=bool(raw.get("fromMe")),
        kind=raw.get("type") or "chat",
        timestamp=raw.get("timestamp"),
        raw=raw,
    )


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: dict[Any, asyncio.Lock] = {}
        self._users: dict[Any, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class InboundService:
    def __init__(self, session_factory, bus: EventBus, interpreter, inactivity=None):
        self.session_factory = session_factory
        self.bus = bus
        self.interpreter = interpreter
        self.inactivity = inactivity
        self.locks = KeyedLocks()

    async def on_inbound_message(self, tenant_id: str, raw: dict) -> Optional[UserFlowState]:
        """Persist, broadcast and run the flow for one inbound message.

        Messages from the same sender are processed one at a time, in order.
        """
        message = normalize_message(tenant_id, raw)
        if message.from_me or not message.sender_id:
            return None

        async with self.locks.hold((tenant_id, message.sender_id)):
            db = self.session_factory()
            try:
                if not self._store(db, message):
                    logger.info(
                        "Duplicate inbound message skipped",
                        extra={"context": {"tenant_id": tenant_id, "message_id": message.transport_message_id}},
                    )
                    return None

                await self.bus.publish(
                    tenant_id,
                    events.INBOUND_MESSAGE,
                    {
                        "chat_id": message.sender_id,
                        "body": message.body,
                        "message_id": message.transport_message_id,
                        "type": message.kind,
                        "timestamp": message.timestamp,
                    },
                )

                if not message.is_conversation:
                    return None

                state = await self.interpreter.handle_inbound(db, tenant_id, message.sender_id, message.body)
                self._reset_timer(db, tenant_id, message.sender_id)
                return state
            finally:
                db.close()

    async def on_vote_update(self, tenant_id: str, raw: dict) -> Optional[dict]:
        db = self.session_factory()
        try:
            return await handle_vote_update(db, self.bus, tenant_id, raw)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Vote update failed: {e}", extra={"context": {"tenant_id": tenant_id}})
            return None
        finally:
            db.close()

    def _store(self, db, message: InboundMessage) -> bool:
        """False only for an already stored transport message id."""
        try:
            stored = save_message(
                db,
                tenant_id=message.tenant_id,
                chat_id=message.sender_id,
                direction="inbound",
                body=message.body,
                kind=message.kind,
                sender=message.raw.get("author") or message.sender_id,
                transport_message_id=message.transport_message_id,
                raw=message.raw,
            )
            db.commit()
            return stored is not None
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store inbound message: {e}", extra={"context": {"tenant_id": message.tenant_id}})
            return True

    def _reset_timer(self, db, tenant_id: str, chat_id: str) -> None:
        if self.inactivity is None:
            return
        chat = get_chat(db, tenant_id, chat_id)
        if chat is None or chat.status == ChatStatus.CLOSED.value:
            return
        self.inactivity.reset(tenant_id, chat_id, assigned=chat.status == ChatStatus.ASSIGNED.value)

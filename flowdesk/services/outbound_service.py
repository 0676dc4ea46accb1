"""Send-or-queue discipline for outbound messages.

A send is quota-checked for all of its units up front. If the tenant's
session is not ready the message is queued without consuming anything; the
queue is replayed when the session reaches `connected`. Each transmitted unit
is consumed right after it goes out, so a multi-part send that fails halfway
is billed only for what was actually sent.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from flowdesk.logging_config import get_logger
from flowdesk.models import QueuedMessage, Tenant
from flowdesk.services import quota_service
from flowdesk.services.chat_service import save_message
from flowdesk.services.errors import (
    DeliveryError,
    FlowdeskError,
    MalformedPayloadError,
    SessionNotReadyError,
)
from flowdesk.services.event_bus import DomainEvent
from flowdesk.services.queue_service import (
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_SENT,
    enqueue_message,
    list_pending,
    mark_queue_status,
)
from flowdesk.services.quota_service import QuotaInfo
from flowdesk.services.sent_message_service import record_sent
from flowdesk.transport.base import SendResult, to_chat_id

logger = get_logger("outbound_service")

KIND_MESSAGE = "message"
KIND_MEDIA = "media"
KIND_POLL = "poll"
KINDS = (KIND_MESSAGE, KIND_MEDIA, KIND_POLL)


@dataclass
class OutboundPayload:
    kind: str = KIND_MESSAGE
    message: Optional[str] = None
    media: Optional[dict] = None
    question: Optional[str] = None
    options: list = field(default_factory=list)
    intro_text: Optional[str] = None
    allow_multiple_answers: bool = False
    correlation_id: Optional[str] = None

    @classmethod
    def from_dict(cls, kind: str, data: dict) -> "OutboundPayload":
        data = data or {}
        return cls(
            kind=kind,
            message=data.get("message"),
            media=data.get("media"),
            question=data.get("question"),
            options=list(data.get("options") or []),
            intro_text=data.get("intro_text"),
            allow_multiple_answers=bool(data.get("allow_multiple_answers", False)),
            correlation_id=data.get("correlation_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("kind")
        return data

    @property
    def has_intro(self) -> bool:
        return self.kind == KIND_POLL and bool((self.intro_text or "").strip())

    def units(self) -> int:
        """Transport messages this payload needs. Poll plus intro text is two."""
        return 2 if self.has_intro else 1

    def clean_options(self) -> list[str]:
        return [str(option).strip() for option in self.options if str(option).strip()]

    def poll_question(self) -> str:
        question = (self.question or "").strip()
        if self.correlation_id:
            return f"{question} (ID:{self.correlation_id})"
        return question

    def validate(self) -> None:
        if self.kind not in KINDS:
            raise MalformedPayloadError(f"Unknown message kind: {self.kind}")
        if self.kind == KIND_POLL:
            if not (self.question or "").strip() or not self.clean_options():
                raise MalformedPayloadError("Poll requires a question and at least one option")
        elif self.kind == KIND_MEDIA:
            if not self.media or not (self.media.get("url") or self.media.get("data")):
                raise MalformedPayloadError("Media requires a url or base64 data")
        elif not (self.message or "").strip():
            raise MalformedPayloadError("Message text is empty")


@dataclass
class SendOutcome:
    status: str  # sent, queued
    transport_message_id: Optional[str] = None
    consumed: int = 0
    remaining: Optional[int] = None
    queue_id: Any = None


class OutboundService:
    def __init__(self, registry, session_factory, chat_id_suffix: str = "@c.us"):
        self.registry = registry
        self.session_factory = session_factory
        self.chat_id_suffix = chat_id_suffix
        self._replay_locks: dict[str, asyncio.Lock] = {}

    def chat_id(self, recipient: str) -> str:
        try:
            return to_chat_id(recipient, self.chat_id_suffix)
        except ValueError as e:
            raise MalformedPayloadError(str(e)) from e

    async def send_or_queue(self, db: Session, tenant_id: str, recipient: str, payload: OutboundPayload) -> SendOutcome:
        """Send now when the session is ready, otherwise queue.

        Raises quota errors before anything is transmitted or queued.
        """
        payload.validate()
        chat_id = self.chat_id(recipient)
        info = quota_service.ensure_quota(db, tenant_id, payload.units())

        if not self.registry.is_ready(tenant_id):
            self.registry.get_or_create(tenant_id)
            return self._enqueue(db, tenant_id, recipient, payload, info)

        try:
            return await self.deliver(db, tenant_id, chat_id, payload, quota=info)
        except DeliveryError as e:
            if e.consumed == 0 and isinstance(e.cause, SessionNotReadyError):
                return self._enqueue(db, tenant_id, recipient, payload, info)
            raise

    async def send_now(self, db: Session, tenant_id: str, recipient: str, payload: OutboundPayload) -> SendOutcome:
        """Immediate-only send (flow replies, notices, OTP). Never queues."""
        payload.validate()
        chat_id = self.chat_id(recipient)
        info = quota_service.ensure_quota(db, tenant_id, payload.units())
        return await self.deliver(db, tenant_id, chat_id, payload, quota=info)

    async def send_text(self, db: Session, tenant_id: str, recipient: str, text: str) -> SendOutcome:
        return await self.send_now(db, tenant_id, recipient, OutboundPayload(kind=KIND_MESSAGE, message=text))

    def _enqueue(self, db: Session, tenant_id: str, recipient: str, payload: OutboundPayload, info: QuotaInfo) -> SendOutcome:
        row = enqueue_message(
            db, tenant_id=tenant_id, recipient=recipient, kind=payload.kind, payload_json=payload.to_dict()
        )
        logger.info(
            "Session not ready, message queued",
            extra={"context": {"tenant_id": tenant_id, "queue_id": str(row.id), "kind": payload.kind}},
        )
        return SendOutcome(status="queued", queue_id=row.id, remaining=info.remaining)

    async def deliver(
        self,
        db: Session,
        tenant_id: str,
        chat_id: str,
        payload: OutboundPayload,
        quota: Optional[QuotaInfo] = None,
    ) -> SendOutcome:
        """Transmit every unit of `payload`, consuming quota after each one.

        Raises DeliveryError carrying the number of units already consumed.
        """
        info = quota or quota_service.ensure_quota(db, tenant_id, payload.units())
        subscription_id = info.subscription.id
        consumed = 0
        result: Optional[SendResult] = None
        corr = payload.correlation_id

        try:
            if payload.kind == KIND_POLL:
                if payload.has_intro:
                    intro = payload.intro_text.strip()
                    result = await self.registry.send_text(tenant_id, chat_id, intro)
                    consumed += self._after_send(
                        db, tenant_id, subscription_id, chat_id, KIND_MESSAGE, result,
                        {"message": intro, "correlation_id": corr}, intro,
                    )
                question = payload.poll_question()
                options = payload.clean_options()
                result = await self.registry.send_poll(
                    tenant_id, chat_id, question, options, payload.allow_multiple_answers
                )
                consumed += self._after_send(
                    db, tenant_id, subscription_id, chat_id, KIND_POLL, result,
                    {
                        "question": question,
                        "options": options,
                        "allow_multiple_answers": payload.allow_multiple_answers,
                        "correlation_id": corr,
                    },
                    question,
                )
            elif payload.kind == KIND_MEDIA:
                result = await self.registry.send_media(tenant_id, chat_id, payload.media, payload.message)
                consumed += self._after_send(
                    db, tenant_id, subscription_id, chat_id, KIND_MEDIA, result, payload.to_dict(), payload.message
                )
            else:
                result = await self.registry.send_text(tenant_id, chat_id, payload.message)
                consumed += self._after_send(
                    db, tenant_id, subscription_id, chat_id, KIND_MESSAGE, result, payload.to_dict(), payload.message
                )
        except Exception as e:
            message = e.message if isinstance(e, FlowdeskError) else str(e)
            logger.warning(
                f"Delivery failed: {message}",
                extra={"context": {"tenant_id": tenant_id, "chat_id": chat_id, "consumed": consumed}},
            )
            raise DeliveryError(message, consumed=consumed, cause=e) from e

        return SendOutcome(
            status="sent",
            transport_message_id=result.transport_message_id if result else None,
            consumed=consumed,
            remaining=max(info.remaining - consumed, 0),
        )

    def _after_send(
        self,
        db: Session,
        tenant_id: str,
        subscription_id,
        chat_id: str,
        kind: str,
        result: SendResult,
        payload: dict,
        body: Optional[str],
    ) -> int:
        quota_service.consume(db, subscription_id, 1)
        db.execute(
            update(Tenant)
            .where(Tenant.tenant_id == tenant_id)
            .values(messages_count=Tenant.messages_count + 1)
            .execution_options(synchronize_session=False)
        )
        save_message(
            db,
            tenant_id=tenant_id,
            chat_id=chat_id,
            direction="outbound",
            body=body,
            kind=kind,
            transport_message_id=result.transport_message_id,
            raw=payload,
        )
        db.commit()

        record_sent(
            db,
            tenant_id=tenant_id,
            recipient=chat_id,
            kind=kind,
            transport_message_id=result.transport_message_id,
            payload=payload,
            correlation_id=payload.get("correlation_id"),
        )
        return 1

    async def handle_session_ready(self, event: DomainEvent) -> None:
        await self.replay_queue(event.tenant_id)

    async def replay_queue(self, tenant_id: str) -> dict:
        """Deliver pending items in creation order. Each item ends sent or failed."""
        lock = self._replay_locks.setdefault(tenant_id, asyncio.Lock())
        counts = {"sent": 0, "failed": 0, "deferred": 0}
        async with lock:
            db = self.session_factory()
            try:
                items = list_pending(db, tenant_id)
                logger.info(f"Replaying {len(items)} queued message(s) for {tenant_id}")
                for index, item in enumerate(items):
                    outcome = await self._replay_item(db, tenant_id, item)
                    if outcome == "deferred":
                        counts["deferred"] = len(items) - index
                        break
                    counts[outcome] += 1
            finally:
                db.close()
        return counts

    async def _replay_item(self, db: Session, tenant_id: str, item: QueuedMessage) -> str:
        db.refresh(item)
        if item.status != QUEUE_PENDING:
            return "sent" if item.status == QUEUE_SENT else "failed"

        try:
            payload = OutboundPayload.from_dict(item.kind, item.payload_json)
            payload.validate()
            chat_id = self.chat_id(item.recipient)
            info = quota_service.ensure_quota(db, tenant_id, payload.units())
        except FlowdeskError as e:
            mark_queue_status(db, queue_id=item.id, status=QUEUE_FAILED, error=e.message)
            logger.warning(f"Queued item rejected: {e.message}", extra={"context": {"queue_id": str(item.id)}})
            return "failed"

        try:
            outcome = await self.deliver(db, tenant_id, chat_id, payload, quota=info)
        except DeliveryError as e:
            if e.consumed == 0 and isinstance(e.cause, SessionNotReadyError):
                # session went away mid-replay; item waits for the next ready
                return "deferred"
            mark_queue_status(
                db, queue_id=item.id, status=QUEUE_FAILED, consumed_count=e.consumed, error=e.message
            )
            return "failed"

        mark_queue_status(
            db,
            queue_id=item.id,
            status=QUEUE_SENT,
            consumed_count=outcome.consumed,
            transport_message_id=outcome.transport_message_id,
        )
        logger.info(
            "Queued item sent",
            extra={"context": {"queue_id": str(item.id), "kind": item.kind, "consumed": outcome.consumed}},
        )
        return "sent"

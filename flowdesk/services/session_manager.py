"""Per-tenant messaging sessions.

The registry owns exactly one transport handle per tenant id and is the only
writer of the tenant's session status. Every handle gets a generation number;
events from a handle that has since been recycled are ignored.

Lifecycle:
    disconnected -> pending      QR emitted, waiting for pairing
    pending -> connected         ready; pending queue is replayed
    connected -> disconnected    logout purges credentials, anything else
                                 waits `reconnect_backoff` and reinitializes
A handle that is not ready within `watchdog_timeout` is destroyed, its
credential directory removed, and a fresh handle is created.
"""

import asyncio
import itertools
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from flowdesk.logging_config import get_logger
from flowdesk.models import Tenant
from flowdesk.services import event_bus as events
from flowdesk.services.alert_service import alert_error, alert_warning
from flowdesk.services.chat_service import backfill_chats
from flowdesk.services.errors import SessionNotReadyError, TransportError
from flowdesk.services.event_bus import EventBus
from flowdesk.services.state_machine import SessionStatus, transition
from flowdesk.transport import base as transport_events
from flowdesk.transport.base import MessagingTransport, SendResult, TransportEvent, TransportHandle

logger = get_logger("session_manager")

InboundHandler = Callable[[str, dict], Awaitable[None]]


@dataclass
class TenantSession:
    tenant_id: str
    generation: int
    status: SessionStatus = SessionStatus.DISCONNECTED
    handle: Optional[TransportHandle] = None
    qr: Optional[str] = None
    ready: bool = False
    # ready arrived before connect() returned a handle
    ready_deferred: bool = False
    ready_event: asyncio.Event = field(default_factory=asyncio.Event)
    connect_task: Optional[asyncio.Task] = None
    watchdog_task: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None


class SessionRegistry:
    def __init__(
        self,
        transport: MessagingTransport,
        session_factory,
        bus: EventBus,
        sessions_dir: str,
        watchdog_timeout: float = 30.0,
        reconnect_backoff: float = 1.5,
    ):
        self.transport = transport
        self.session_factory = session_factory
        self.bus = bus
        self.sessions_dir = sessions_dir
        self.watchdog_timeout = watchdog_timeout
        self.reconnect_backoff = reconnect_backoff
        self._sessions: dict[str, TenantSession] = {}
        self._generations = itertools.count(1)
        self._message_handler: Optional[InboundHandler] = None
        self._vote_handler: Optional[InboundHandler] = None

    def set_inbound_handlers(self, on_message: InboundHandler, on_vote: InboundHandler) -> None:
        self._message_handler = on_message
        self._vote_handler = on_vote

    def credential_path(self, tenant_id: str) -> str:
        return os.path.join(self.sessions_dir, f"session-{tenant_id}")

    # ------------------------------------------------------------------
    # Registry lifecycle
    # ------------------------------------------------------------------

    def get_or_create(self, tenant_id: str) -> TenantSession:
        """Return the live session, creating and connecting it on first access.

        No await between lookup and insert, so concurrent callers on the event
        loop always share one session.
        """
        session = self._sessions.get(tenant_id)
        if session is not None:
            return session

        session = TenantSession(tenant_id=tenant_id, generation=next(self._generations))
        self._sessions[tenant_id] = session
        loop = asyncio.get_running_loop()
        session.connect_task = loop.create_task(self._connect(session))
        session.watchdog_task = loop.create_task(self._watchdog(tenant_id, session.generation))
        logger.info(
            "Session created",
            extra={"context": {"tenant_id": tenant_id, "generation": session.generation}},
        )
        return session

    def get(self, tenant_id: str) -> Optional[TenantSession]:
        return self._sessions.get(tenant_id)

    def is_ready(self, tenant_id: str) -> bool:
        session = self._sessions.get(tenant_id)
        return bool(session and session.ready and session.handle is not None)

    def get_qr(self, tenant_id: str) -> Optional[str]:
        session = self._sessions.get(tenant_id)
        return session.qr if session else None

    def get_status(self, tenant_id: str) -> dict:
        session = self._sessions.get(tenant_id)
        if session is None:
            return {"status": SessionStatus.DISCONNECTED.value, "ready": False, "qr_available": False}
        return {
            "status": session.status.value,
            "ready": self.is_ready(tenant_id),
            "qr_available": bool(session.qr),
        }

    def summary(self) -> dict:
        return {
            "sessions": len(self._sessions),
            "ready": sum(1 for tenant_id in self._sessions if self.is_ready(tenant_id)),
        }

    async def wait_until_ready(self, tenant_id: str, timeout: float) -> bool:
        """Wait for the tenant's session to become ready, following recycles."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            session = self.get_or_create(tenant_id)
            if self.is_ready(tenant_id):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                await asyncio.wait_for(session.ready_event.wait(), timeout=min(remaining, 1.0))
            except asyncio.TimeoutError:
                pass

    async def recycle(
        self,
        tenant_id: str,
        reason: str,
        purge_credentials: bool = True,
        expected_generation: Optional[int] = None,
    ) -> Optional[TenantSession]:
        """Destroy the current handle and create a fresh session."""
        session = self._sessions.get(tenant_id)
        if session is None:
            return None
        if expected_generation is not None and session.generation != expected_generation:
            return session

        logger.warning(
            f"Recycling session for {tenant_id}: {reason}",
            extra={"context": {"tenant_id": tenant_id, "generation": session.generation}},
        )
        del self._sessions[tenant_id]
        await self._teardown(session)
        if purge_credentials:
            self._remove_credentials(tenant_id)
        return self.get_or_create(tenant_id)

    async def destroy(self, tenant_id: str, purge_credentials: bool = False) -> None:
        session = self._sessions.pop(tenant_id, None)
        if session is not None:
            await self._teardown(session)
        if purge_credentials:
            self._remove_credentials(tenant_id)

    async def shutdown(self) -> None:
        for tenant_id in list(self._sessions):
            await self.destroy(tenant_id)

    def restore_sessions(self) -> int:
        """Reconnect every tenant that was connected before the last shutdown."""
        db = self.session_factory()
        try:
            tenant_ids = [
                row.tenant_id
                for row in db.query(Tenant).filter(Tenant.session_status == SessionStatus.CONNECTED.value).all()
            ]
        finally:
            db.close()
        for tenant_id in tenant_ids:
            self.get_or_create(tenant_id)
        return len(tenant_ids)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, tenant_id: str, operation: Callable[[TransportHandle], Awaitable[SendResult]]) -> SendResult:
        session = self._sessions.get(tenant_id)
        if session is None or not session.ready or session.handle is None:
            raise SessionNotReadyError(tenant_id)

        generation = session.generation
        try:
            return await operation(session.handle)
        except TransportError as e:
            if not e.session_lost:
                raise
            await self.recycle(tenant_id, f"transport lost: {e.message}", purge_credentials=False, expected_generation=generation)
            raise SessionNotReadyError(tenant_id, recycled=True) from e

    async def send_text(self, tenant_id: str, chat_id: str, text: str) -> SendResult:
        return await self._send(tenant_id, lambda handle: handle.send_text(chat_id, text))

    async def send_media(self, tenant_id: str, chat_id: str, media: dict, caption: Optional[str] = None) -> SendResult:
        return await self._send(tenant_id, lambda handle: handle.send_media(chat_id, media, caption))

    async def send_poll(
        self,
        tenant_id: str,
        chat_id: str,
        question: str,
        options: list[str],
        allow_multiple_answers: bool = False,
    ) -> SendResult:
        return await self._send(
            tenant_id, lambda handle: handle.send_poll(chat_id, question, options, allow_multiple_answers)
        )

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    async def dispatch(self, tenant_id: str, event: TransportEvent, generation: Optional[int] = None) -> None:
        """Apply one transport event. `generation=None` targets the current handle."""
        if event.type == transport_events.MESSAGE:
            if self._message_handler:
                await self._message_handler(tenant_id, event.data)
            return
        if event.type == transport_events.VOTE_UPDATE:
            if self._vote_handler:
                await self._vote_handler(tenant_id, event.data)
            return

        session = self._sessions.get(tenant_id)
        if session is None:
            logger.info(f"Ignoring {event.type} for unknown session {tenant_id}")
            return
        if generation is not None and generation != session.generation:
            logger.info(
                f"Ignoring stale {event.type} for {tenant_id}",
                extra={"context": {"event_generation": generation, "current_generation": session.generation}},
            )
            return

        handlers = {
            transport_events.QR: self._on_qr,
            transport_events.AUTHENTICATED: self._on_authenticated,
            transport_events.READY: self._on_ready,
            transport_events.DISCONNECTED: self._on_disconnected,
            transport_events.AUTH_FAILURE: self._on_auth_failure,
        }
        handler = handlers.get(event.type)
        if handler is None:
            logger.warning(f"Unknown transport event: {event.type}")
            return
        await handler(session, event)

    async def _on_qr(self, session: TenantSession, event: TransportEvent) -> None:
        session.qr = event.data.get("qr")
        session.ready = False
        session.ready_deferred = False
        session.ready_event.clear()
        self._set_status(session, SessionStatus.PENDING)
        await self.bus.publish(session.tenant_id, events.SESSION_QR, {"qr": session.qr})

    async def _on_authenticated(self, session: TenantSession, event: TransportEvent) -> None:
        logger.info(f"Session authenticated: {session.tenant_id}")
        await self.bus.publish(session.tenant_id, events.SESSION_AUTHENTICATED, {})

    async def _on_ready(self, session: TenantSession, event: TransportEvent) -> None:
        if session.ready:
            return
        if session.handle is None:
            session.ready_deferred = True
            logger.info(f"Ready before handle attached, deferring: {session.tenant_id}")
            return
        session.ready_deferred = False
        session.qr = None
        session.ready = True
        session.ready_event.set()
        self._cancel(session.watchdog_task)
        self._set_status(session, SessionStatus.CONNECTED, last_connected_at=datetime.now(timezone.utc))
        logger.info(f"Session ready: {session.tenant_id}")

        # queue replay subscribes to this event
        await self.bus.publish(session.tenant_id, events.SESSION_READY, {"message": "connected"})
        await self._backfill(session)

    async def _on_disconnected(self, session: TenantSession, event: TransportEvent) -> None:
        reason = event.reason or "unknown"
        session.ready = False
        session.ready_deferred = False
        session.ready_event.clear()
        session.qr = None
        self._set_status(
            session,
            SessionStatus.DISCONNECTED,
            last_disconnected_at=datetime.now(timezone.utc),
            last_disconnect_reason=reason,
        )
        await self.bus.publish(session.tenant_id, events.SESSION_DISCONNECTED, {"reason": reason})

        if event.is_logout:
            logger.info(f"Session logged out, purging credentials: {session.tenant_id}")
            await self.destroy(session.tenant_id, purge_credentials=True)
            return

        self._cancel(session.reconnect_task)
        session.reconnect_task = asyncio.get_running_loop().create_task(
            self._reinitialize(session.tenant_id, session.generation, reason)
        )

    async def _on_auth_failure(self, session: TenantSession, event: TransportEvent) -> None:
        reason = event.reason or "auth failure"
        session.ready = False
        session.ready_deferred = False
        session.ready_event.clear()
        session.qr = None
        self._remove_credentials(session.tenant_id)
        self._set_status(session, SessionStatus.PENDING, last_disconnect_reason=reason)
        await self.bus.publish(session.tenant_id, events.SESSION_AUTH_FAILURE, {"reason": reason})
        await alert_warning("WhatsApp auth failure", {"tenant_id": session.tenant_id, "reason": reason})

        self._cancel(session.reconnect_task)
        session.reconnect_task = asyncio.get_running_loop().create_task(
            self._recycle_after_backoff(session.tenant_id, session.generation)
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _listener(self, tenant_id: str, generation: int):
        async def listener(event: TransportEvent) -> None:
            await self.dispatch(tenant_id, event, generation=generation)

        return listener

    async def _connect(self, session: TenantSession) -> None:
        tenant_id = session.tenant_id
        try:
            handle = await self.transport.connect(
                tenant_id, self.credential_path(tenant_id), self._listener(tenant_id, session.generation)
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Transport connect failed for {tenant_id}: {e}",
                extra={"context": {"tenant_id": tenant_id, "generation": session.generation}},
            )
            # next access builds a fresh session
            if self._sessions.get(tenant_id) is session:
                del self._sessions[tenant_id]
                self._cancel(session.watchdog_task)
            await alert_error("WhatsApp transport connect failed", {"tenant_id": tenant_id, "error": str(e)})
            return

        if self._sessions.get(tenant_id) is not session:
            await self._destroy_handle(tenant_id, handle)
            return
        session.handle = handle
        if session.ready_deferred:
            await self._on_ready(session, TransportEvent(type=transport_events.READY))

    async def _watchdog(self, tenant_id: str, generation: int) -> None:
        await asyncio.sleep(self.watchdog_timeout)
        session = self._sessions.get(tenant_id)
        if session is None or session.generation != generation or session.ready:
            return
        await alert_warning("Session not ready in time, recycling", {"tenant_id": tenant_id})
        await self.recycle(tenant_id, "watchdog timeout", purge_credentials=True, expected_generation=generation)

    async def _reinitialize(self, tenant_id: str, generation: int, reason: str) -> None:
        await asyncio.sleep(self.reconnect_backoff)
        session = self._sessions.get(tenant_id)
        if session is None or session.generation != generation or session.handle is None:
            return
        try:
            logger.info(f"Reinitializing session for {tenant_id} after '{reason}'")
            await session.handle.reinitialize()
        except Exception as e:
            logger.warning(f"Reinitialize failed for {tenant_id}: {e}")
            if self._sessions.get(tenant_id) is session:
                del self._sessions[tenant_id]
            await self._teardown(session)

    async def _recycle_after_backoff(self, tenant_id: str, generation: int) -> None:
        await asyncio.sleep(self.reconnect_backoff)
        await self.recycle(tenant_id, "auth failure", purge_credentials=False, expected_generation=generation)

    async def _backfill(self, session: TenantSession) -> None:
        if session.handle is None:
            return
        try:
            chats = await session.handle.fetch_chats()
        except Exception as e:
            logger.warning(f"Chat backfill failed for {session.tenant_id}: {e}")
            return
        db = self.session_factory()
        try:
            backfill_chats(db, session.tenant_id, chats)
        except Exception as e:
            db.rollback()
            logger.warning(f"Chat backfill persist failed for {session.tenant_id}: {e}")
        finally:
            db.close()

    async def _teardown(self, session: TenantSession) -> None:
        session.ready = False
        session.ready_event.clear()
        for task in (session.watchdog_task, session.reconnect_task, session.connect_task):
            self._cancel(task)
        if session.handle is not None:
            await self._destroy_handle(session.tenant_id, session.handle)
            session.handle = None

    async def _destroy_handle(self, tenant_id: str, handle: TransportHandle) -> None:
        try:
            await handle.destroy()
        except Exception as e:
            logger.warning(f"Handle destroy failed for {tenant_id}: {e}")

    def _remove_credentials(self, tenant_id: str) -> None:
        path = self.credential_path(tenant_id)
        if os.path.isdir(path):
            shutil.rmtree(path, ignore_errors=True)
            logger.info(f"Deleted credentials for {tenant_id}")

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _set_status(self, session: TenantSession, status: SessionStatus, **fields) -> None:
        """Mirror a status change to the tenant row."""
        if status != session.status:
            session.status = transition(session.status, status)

        db = self.session_factory()
        try:
            tenant = db.query(Tenant).filter(Tenant.tenant_id == session.tenant_id).first()
            if tenant is None:
                return
            tenant.session_status = status.value
            for key, value in fields.items():
                setattr(tenant, key, value)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to persist session status for {session.tenant_id}: {e}")
        finally:
            db.close()

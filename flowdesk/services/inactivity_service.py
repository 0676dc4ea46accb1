"""Closes idle conversations.

One fire-once job per (tenant, chat), replaced on every inbound message.
Jobs live in the scheduler's memory store: timers are lost on restart and a
chat idle across a restart simply stays open until its next message.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.date import DateTrigger

from flowdesk.logging_config import get_logger
from flowdesk.services import event_bus as events
from flowdesk.services.assignment_service import tenant_text
from flowdesk.services.chat_service import get_chat, mark_chat_closed
from flowdesk.services.errors import FlowdeskError
from flowdesk.services.event_bus import EventBus
from flowdesk.services.scheduler_service import SchedulerService

logger = get_logger("inactivity_service")


class InactivitySupervisor:
    def __init__(
        self,
        scheduler: SchedulerService,
        session_factory,
        bus: EventBus,
        outbound,
        assigned_minutes: float,
        bot_minutes: float,
        closing_message: Optional[str] = None,
    ):
        self.scheduler = scheduler
        self.session_factory = session_factory
        self.bus = bus
        self.outbound = outbound
        self.assigned_minutes = assigned_minutes
        self.bot_minutes = bot_minutes
        self.closing_message = closing_message

    @staticmethod
    def job_id(tenant_id: str, chat_id: str) -> str:
        return f"inactivity:{tenant_id}:{chat_id}"

    def reset(self, tenant_id: str, chat_id: str, assigned: bool) -> datetime:
        """(Re)arm the chat's timer. Agent-assigned chats use the shorter timeout."""
        minutes = self.assigned_minutes if assigned else self.bot_minutes
        run_at = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        self.scheduler.scheduler.add_job(
            self.expire,
            DateTrigger(run_date=run_at),
            args=[tenant_id, chat_id],
            id=self.job_id(tenant_id, chat_id),
            replace_existing=True,
        )
        return run_at

    def cancel(self, tenant_id: str, chat_id: str) -> bool:
        return self.scheduler.remove_job(self.job_id(tenant_id, chat_id))

    async def expire(self, tenant_id: str, chat_id: str) -> bool:
        db = self.session_factory()
        try:
            chat = get_chat(db, tenant_id, chat_id)
            if chat is None or not mark_chat_closed(db, chat):
                return False
            db.commit()
            logger.info("Chat closed for inactivity", extra={"context": {"tenant_id": tenant_id, "chat_id": chat_id}})

            await self.bus.publish(tenant_id, events.CHAT_CLOSED, {"chat_id": chat_id, "reason": "inactivity"})

            text = tenant_text(db, tenant_id, "closing_message", self.closing_message)
            if text:
                try:
                    await self.outbound.send_text(db, tenant_id, chat_id, text)
                except FlowdeskError as e:
                    logger.warning(f"Closing message not sent: {e.message}", extra={"context": {"chat_id": chat_id}})
            return True
        finally:
            db.close()

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from flowdesk.config import settings
from flowdesk.logging_config import get_logger
from flowdesk.models import Agent, Chat, Tenant
from flowdesk.services import event_bus as events
from flowdesk.services.chat_service import get_or_create_chat, get_tenant, list_available_agents
from flowdesk.services.errors import FlowdeskError
from flowdesk.services.event_bus import EventBus
from flowdesk.services.result import Result
from flowdesk.services.state_machine import ChatStatus, assign_chat

logger = get_logger("assignment_service")


def tenant_text(db: Session, tenant_id: str, key: str, default: Optional[str]) -> Optional[str]:
    tenant = get_tenant(db, tenant_id)
    config = (tenant.config or {}) if tenant else {}
    return config.get(key) or default


def take_round_robin_slot(db: Session, tenant_id: str) -> int:
    """Claim the tenant's next round-robin position. Caller commits.

    The increment happens in SQL, so concurrent hand-offs never share a slot.
    """
    db.execute(
        update(Tenant)
        .where(Tenant.tenant_id == tenant_id)
        .values(assignment_cursor=func.coalesce(Tenant.assignment_cursor, 0) + 1)
        .execution_options(synchronize_session=False)
    )
    cursor = db.query(Tenant.assignment_cursor).filter(Tenant.tenant_id == tenant_id).scalar()
    return (cursor or 1) - 1


class AssignmentService:
    """Routes conversations to human agents."""

    def __init__(self, outbound, bus: EventBus):
        self.outbound = outbound
        self.bus = bus

    async def assign_chat(self, db: Session, tenant_id: str, chat_id: str, agent_id=None) -> Result[Chat]:
        """Manual assignment when `agent_id` is given, round-robin otherwise."""
        if agent_id is not None:
            return await self.assign_manually(db, tenant_id, chat_id, agent_id)

        chat = await self.auto_assign(db, tenant_id, chat_id)
        if chat is None:
            return Result.failure("No agents available", "no_agent")
        return Result.success(chat)

    async def auto_assign(self, db: Session, tenant_id: str, chat_id: str) -> Optional[Chat]:
        """Assign to the next active, online agent. None when nobody is available.

        The end user is told when no agent is available.
        """
        chat = get_or_create_chat(db, tenant_id, chat_id)

        if chat.status == ChatStatus.ASSIGNED.value and chat.agent_id:
            current = db.query(Agent).filter(Agent.id == chat.agent_id).first()
            if current and current.status == "active" and current.online:
                return chat

        agents = list_available_agents(db, tenant_id)
        if not agents:
            db.commit()
            logger.warning(f"No agents available for {tenant_id}", extra={"context": {"chat_id": chat_id}})
            await self.notify_no_agent(db, tenant_id, chat_id)
            return None

        agent = agents[take_round_robin_slot(db, tenant_id) % len(agents)]
        await self._assign(db, chat, agent)
        return chat

    async def assign_manually(self, db: Session, tenant_id: str, chat_id: str, agent_id) -> Result[Chat]:
        agent = (
            db.query(Agent)
            .filter(Agent.id == agent_id, Agent.tenant_id == tenant_id, Agent.status == "active")
            .first()
        )
        if agent is None:
            return Result.failure("Agent not found or inactive", "agent_not_found")

        chat = get_or_create_chat(db, tenant_id, chat_id)
        await self._assign(db, chat, agent)
        return Result.success(chat)

    async def notify_no_agent(self, db: Session, tenant_id: str, chat_id: str) -> None:
        text = tenant_text(db, tenant_id, "no_agent_message", settings.no_agent_message)
        await self._notify(db, tenant_id, chat_id, text)

    async def _assign(self, db: Session, chat: Chat, agent: Agent) -> None:
        chat.status = assign_chat(ChatStatus(chat.status)).value
        chat.agent_id = agent.id
        chat.assigned_at = datetime.now(timezone.utc)
        chat.last_activity_at = chat.assigned_at
        db.commit()

        logger.info(
            "Chat assigned",
            extra={"context": {"tenant_id": chat.tenant_id, "chat_id": chat.chat_id, "agent_id": str(agent.id)}},
        )

        template = tenant_text(db, chat.tenant_id, "agent_connected_message", settings.agent_connected_message)
        await self._notify(db, chat.tenant_id, chat.chat_id, template.replace("{agent_name}", agent.name or "our support team"))
        await self.bus.publish(
            chat.tenant_id,
            events.CHAT_ASSIGNED,
            {"chat_id": chat.chat_id, "agent_id": str(agent.id), "agent_name": agent.name},
        )

    async def _notify(self, db: Session, tenant_id: str, chat_id: str, text: Optional[str]) -> None:
        if not text:
            return
        try:
            await self.outbound.send_text(db, tenant_id, chat_id, text)
        except FlowdeskError as e:
            logger.warning(
                f"Could not notify end user: {e.message}",
                extra={"context": {"tenant_id": tenant_id, "chat_id": chat_id}},
            )

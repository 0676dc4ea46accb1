"""In-process event bus.

Session lifecycle changes, inbound messages, poll votes and chat updates are
published here. Handlers subscribe either to an event type (any tenant) or
to one tenant (any event type, used by the realtime websocket).
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from flowdesk.logging_config import get_logger

logger = get_logger("event_bus")

SESSION_QR = "qr"
SESSION_AUTHENTICATED = "authenticated"
SESSION_READY = "ready"
SESSION_DISCONNECTED = "disconnected"
SESSION_AUTH_FAILURE = "auth_failure"
INBOUND_MESSAGE = "inbound_message"
POLL_VOTE = "poll_vote"
CHAT_ASSIGNED = "chat_assigned"
CHAT_CLOSED = "chat_closed"
FLOW_ACTION = "flow_action"


@dataclass
class DomainEvent:
    tenant_id: str
    event_type: str
    data: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "tenant_id": self.tenant_id,
            "data": self.data,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable]] = defaultdict(list)
        self._tenant_handlers: dict[str, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Callable) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        try:
            self._handlers[event_type].remove(handler)
        except ValueError:
            pass

    def subscribe_tenant(self, tenant_id: str, handler: Callable) -> None:
        self._tenant_handlers[tenant_id].append(handler)

    def unsubscribe_tenant(self, tenant_id: str, handler: Callable) -> None:
        handlers = self._tenant_handlers.get(tenant_id)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass
        if not handlers:
            self._tenant_handlers.pop(tenant_id, None)

    async def publish(self, tenant_id: str, event_type: str, data: dict | None = None) -> DomainEvent:
        """Deliver to every matching handler. A failing handler does not stop the others."""
        event = DomainEvent(tenant_id=tenant_id, event_type=event_type, data=data or {})
        handlers = list(self._handlers.get(event_type, [])) + list(self._tenant_handlers.get(tenant_id, []))

        for handler in handlers:
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(
                    f"Event handler failed: {getattr(handler, '__name__', repr(handler))}",
                    extra={"context": {"tenant_id": tenant_id, "event_type": event_type, "error": str(e)}},
                )
        return event

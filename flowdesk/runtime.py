"""Long-lived collaborators, built once per application."""

from flowdesk.config import Settings, settings
from flowdesk.database import SessionLocal
from flowdesk.logging_config import get_logger
from flowdesk.services import event_bus as events
from flowdesk.services.assignment_service import AssignmentService
from flowdesk.services.event_bus import EventBus
from flowdesk.services.flow_interpreter import FlowInterpreter
from flowdesk.services.inactivity_service import InactivitySupervisor
from flowdesk.services.inbound_service import InboundService
from flowdesk.services.outbound_service import OutboundService
from flowdesk.services.scheduled_message_service import dispatch_due
from flowdesk.services.scheduler_service import SchedulerService
from flowdesk.services.session_manager import SessionRegistry
from flowdesk.transport.base import MessagingTransport
from flowdesk.transport.gateway import GatewayTransport

logger = get_logger("runtime")

SCHEDULED_DISPATCH_JOB_ID = "scheduled_messages_dispatch"


class Runtime:
    def __init__(
        self,
        transport: MessagingTransport,
        session_factory,
        config: Settings = settings,
        bus: EventBus | None = None,
        scheduler: SchedulerService | None = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.bus = bus or EventBus()
        self.scheduler = scheduler or SchedulerService()

        self.registry = SessionRegistry(
            transport,
            session_factory,
            self.bus,
            sessions_dir=config.sessions_dir,
            watchdog_timeout=config.watchdog_timeout_seconds,
            reconnect_backoff=config.reconnect_backoff_seconds,
        )
        self.outbound = OutboundService(self.registry, session_factory, config.chat_id_suffix)
        self.assignment = AssignmentService(self.outbound, self.bus)
        self.inactivity = InactivitySupervisor(
            self.scheduler,
            session_factory,
            self.bus,
            self.outbound,
            assigned_minutes=config.inactivity_assigned_minutes,
            bot_minutes=config.inactivity_bot_minutes,
            closing_message=config.inactivity_closing_message,
        )
        self.interpreter = FlowInterpreter(self.outbound, self.assignment, self.bus, config.max_flow_steps)
        self.inbound = InboundService(session_factory, self.bus, self.interpreter, self.inactivity)

        self.registry.set_inbound_handlers(self.inbound.on_inbound_message, self.inbound.on_vote_update)
        self.bus.subscribe(events.SESSION_READY, self.outbound.handle_session_ready)

    async def dispatch_scheduled(self) -> dict:
        return await dispatch_due(self.session_factory, self.outbound)

    async def start(self) -> None:
        if self.config.scheduler_enabled:
            self.scheduler.add_interval_job(
                self.dispatch_scheduled,
                self.config.scheduled_dispatch_interval_seconds,
                SCHEDULED_DISPATCH_JOB_ID,
            )
        self.scheduler.start()
        restored = self.registry.restore_sessions()
        logger.info("Runtime started", extra={"context": {"restored_sessions": restored}})

    async def stop(self) -> None:
        self.scheduler.stop()
        await self.registry.shutdown()
        logger.info("Runtime stopped")


def build_runtime() -> Runtime:
    transport = GatewayTransport(
        settings.gateway_url,
        settings.gateway_token,
        callback_base_url=settings.public_base_url,
        timeout=settings.transport_timeout_seconds,
    )
    return Runtime(transport, SessionLocal)

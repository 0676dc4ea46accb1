"""Walks a tenant's flow graph for one inbound message.

Per (tenant, user, flow) the cursor names the node the conversation sits at.
Auto-advancing nodes (trigger, send_message, template, action, connect_agent)
run their side effect and follow their single outgoing edge. The walk stops
at wait_for_reply, end, a route_by_keyword node without input, or as soon as
connect_agent hands the chat to an agent. The cursor is written before each
node runs, so a failure leaves the last reached node as the resume point.
"""

import re
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from flowdesk.config import settings
from flowdesk.logging_config import get_logger
from flowdesk.models import Chat, Flow, Template, UserFlowState
from flowdesk.services import event_bus as events
from flowdesk.services import flow_service as nodes
from flowdesk.services.chat_service import get_or_create_chat, get_tenant, touch_chat
from flowdesk.services.event_bus import EventBus
from flowdesk.services.flow_service import FlowGraph, FlowNode, list_flows, normalize, select_flow
from flowdesk.services.state_machine import ChatStatus
from flowdesk.services.user_flow_service import (
    create_user_state,
    delete_user_state,
    get_latest_user_state,
    get_user_state,
    update_user_state,
)

logger = get_logger("flow_interpreter")

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass
class InboundContext:
    tenant_id: str
    sender_id: str
    body: str
    chat: Chat


def render_template(body: str, variables: dict) -> str:
    """Replace {{name}} placeholders. Unknown names are left untouched."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_sub, body or "")


class FlowInterpreter:
    def __init__(self, outbound, assignment, bus: EventBus, max_steps: Optional[int] = None):
        self.outbound = outbound
        self.assignment = assignment
        self.bus = bus
        self.max_steps = max_steps or settings.max_flow_steps

    def restart_keywords(self, db: Session, tenant_id: str) -> set[str]:
        tenant = get_tenant(db, tenant_id)
        configured = (tenant.config or {}).get("restart_keywords") if tenant else None
        if configured:
            return set(nodes.parse_keywords(configured))
        return settings.restart_keyword_set

    async def handle_inbound(self, db: Session, tenant_id: str, sender_id: str, body: str) -> Optional[UserFlowState]:
        """Process one inbound message. Never raises."""
        try:
            return await self._handle(db, tenant_id, sender_id, body or "")
        except Exception as e:
            db.rollback()
            logger.error(
                f"Flow processing failed: {e}",
                exc_info=True,
                extra={"context": {"tenant_id": tenant_id, "sender_id": sender_id}},
            )
            return self._ensure_cursor(db, tenant_id, sender_id, body or "")

    async def _handle(self, db: Session, tenant_id: str, sender_id: str, body: str) -> Optional[UserFlowState]:
        chat = get_or_create_chat(db, tenant_id, sender_id)
        if chat.status == ChatStatus.ASSIGNED.value:
            db.commit()
            logger.info("Chat assigned to agent, flow skipped", extra={"context": {"tenant_id": tenant_id, "chat_id": sender_id}})
            return None

        force_restart = chat.status == ChatStatus.CLOSED.value
        touch_chat(db, chat)
        db.commit()

        if normalize(body) in self.restart_keywords(db, tenant_id):
            force_restart = True

        flow, graph, by_trigger = self._select(db, tenant_id, sender_id, body)
        if flow is None:
            logger.info("No flow configured", extra={"context": {"tenant_id": tenant_id}})
            return None
        trigger = graph.trigger_node()
        if trigger is None:
            logger.warning(f"Flow {flow.id} has no trigger node")
            return None

        ctx = InboundContext(tenant_id=tenant_id, sender_id=sender_id, body=body, chat=chat)
        state = get_user_state(db, tenant_id, sender_id, flow.id)

        if state is None:
            state = create_user_state(db, tenant_id, sender_id, flow.id, trigger.id)
            return await self._advance(db, ctx, graph, state, trigger.id, None)

        if force_restart:
            delete_user_state(db, state)
            state = create_user_state(db, tenant_id, sender_id, flow.id, trigger.id)
            return await self._advance(db, ctx, graph, state, trigger.id, None)

        if by_trigger:
            return await self._advance(db, ctx, graph, state, trigger.id, None)

        return await self._resume(db, ctx, graph, state, trigger)

    def _select(self, db: Session, tenant_id: str, sender_id: str, body: str) -> tuple[Optional[Flow], Optional[FlowGraph], bool]:
        flows = list_flows(db, tenant_id)
        latest = get_latest_user_state(db, tenant_id, sender_id)
        flow, by_trigger = select_flow(flows, body, latest.flow_id if latest else None)
        if flow is None:
            return None, None, False
        return flow, FlowGraph(flow), by_trigger

    async def _resume(self, db: Session, ctx: InboundContext, graph: FlowGraph, state: UserFlowState, trigger: FlowNode) -> UserFlowState:
        node = graph.node(state.current_node_id)
        if node is None:
            logger.warning(f"Cursor {state.current_node_id} not in flow, restarting")
            return await self._advance(db, ctx, graph, state, trigger.id, None)

        if node.type == nodes.WAIT_FOR_REPLY:
            next_id = graph.next_id(node.id)
            if next_id is None:
                return state
            return await self._advance(db, ctx, graph, state, next_id, ctx.body)

        if node.type == nodes.ROUTE_BY_KEYWORD:
            return await self._advance(db, ctx, graph, state, node.id, ctx.body)

        if node.type == nodes.END:
            return await self._advance(db, ctx, graph, state, trigger.id, None)

        if node.type == nodes.CONNECT_AGENT:
            # suspended until an agent workflow or a restart keyword moves it
            return state

        return await self._advance(db, ctx, graph, state, node.id, None)

    async def _advance(
        self,
        db: Session,
        ctx: InboundContext,
        graph: FlowGraph,
        state: UserFlowState,
        start_id: str,
        text: Optional[str],
    ) -> UserFlowState:
        current_id = start_id
        for _ in range(self.max_steps):
            node = graph.node(current_id)
            if node is None:
                logger.warning(f"Edge points to missing node {current_id}")
                return state

            if node.type == nodes.ROUTE_BY_KEYWORD:
                if text is None:
                    update_user_state(db, state, node.id)
                    return state
                target = graph.route(node, text)
                text = None
                if target is None:
                    logger.info("No route matched and no fallback", extra={"context": {"node_id": node.id}})
                    return state
                update_user_state(db, state, node.id)
                current_id = target
                continue

            update_user_state(db, state, node.id)

            if node.type == nodes.WAIT_FOR_REPLY:
                return state
            if node.type == nodes.END:
                if node.data.get("message"):
                    await self.outbound.send_text(db, ctx.tenant_id, ctx.sender_id, node.data["message"])
                return state

            if node.type == nodes.SEND_MESSAGE:
                message = node.data.get("message") or node.data.get("text")
                if message:
                    await self.outbound.send_text(db, ctx.tenant_id, ctx.sender_id, message)
            elif node.type == nodes.TEMPLATE:
                await self._send_template(db, ctx, node)
            elif node.type == nodes.ACTION:
                await self.bus.publish(
                    ctx.tenant_id,
                    events.FLOW_ACTION,
                    {
                        "flow_id": str(graph.flow.id),
                        "node_id": node.id,
                        "user_id": ctx.sender_id,
                        "action": node.data.get("action"),
                        "params": node.data.get("params") or {},
                    },
                )
            elif node.type == nodes.CONNECT_AGENT:
                chat = await self.assignment.auto_assign(db, ctx.tenant_id, ctx.sender_id)
                if chat is not None:
                    return state
            elif node.type not in nodes.AUTO_ADVANCING:
                logger.warning(f"Unknown node type: {node.type}")
                return state

            next_id = graph.next_id(node.id)
            if next_id is None:
                return state
            # the reply belongs to the node the walk resumed at
            text = None
            current_id = next_id

        logger.warning(
            "Flow step limit reached",
            extra={"context": {"tenant_id": ctx.tenant_id, "flow_id": str(graph.flow.id), "cursor": state.current_node_id}},
        )
        return state

    async def _send_template(self, db: Session, ctx: InboundContext, node: FlowNode) -> None:
        template_id = node.data.get("templateId") or node.data.get("template_id")
        template_name = node.data.get("templateName") or node.data.get("template")
        query = db.query(Template).filter(Template.tenant_id == ctx.tenant_id)
        template = None
        if template_id:
            try:
                template = query.filter(Template.id == uuid.UUID(str(template_id))).first()
            except ValueError:
                template = None
        if template is None and template_name:
            template = query.filter(Template.name == template_name).first()
        if template is None:
            logger.warning(f"Template not found for node {node.id}")
            return

        variables = dict(node.data.get("variables") or {})
        variables.setdefault("name", ctx.chat.name or "")
        variables.setdefault("phone", re.sub(r"\D", "", ctx.sender_id.split("@")[0]))
        await self.outbound.send_text(db, ctx.tenant_id, ctx.sender_id, render_template(template.body, variables))

    def _ensure_cursor(self, db: Session, tenant_id: str, sender_id: str, body: str) -> Optional[UserFlowState]:
        """After a failure, make sure the user still has a cursor to resume from."""
        try:
            flow, graph, _ = self._select(db, tenant_id, sender_id, body)
            if flow is None or graph.trigger_node() is None:
                return None
            state = get_user_state(db, tenant_id, sender_id, flow.id)
            if state is None:
                state = create_user_state(db, tenant_id, sender_id, flow.id, graph.trigger_node().id)
            return state
        except Exception as e:
            db.rollback()
            logger.error(f"Could not ensure flow cursor: {e}", extra={"context": {"tenant_id": tenant_id}})
            return None

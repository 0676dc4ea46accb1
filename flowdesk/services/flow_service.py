"""Flow graphs: storage, selection and keyword routing.

Keyword policy: text and keywords are compared case-insensitively after
trimming. Keywords of two characters or fewer must equal the whole text,
longer keywords match as a substring. When several keywords match, the
longest wins; ties go to the earlier route.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from flowdesk.logging_config import get_logger
from flowdesk.models import Flow

logger = get_logger("flow_service")

TRIGGER = "trigger"
SEND_MESSAGE = "send_message"
TEMPLATE = "template"
ACTION = "action"
CONNECT_AGENT = "connect_agent"
ROUTE_BY_KEYWORD = "route_by_keyword"
WAIT_FOR_REPLY = "wait_for_reply"
END = "end"

NODE_TYPES = {TRIGGER, SEND_MESSAGE, TEMPLATE, ACTION, CONNECT_AGENT, ROUTE_BY_KEYWORD, WAIT_FOR_REPLY, END}
AUTO_ADVANCING = {TRIGGER, SEND_MESSAGE, TEMPLATE, ACTION, CONNECT_AGENT}

SHORT_KEYWORD_LENGTH = 2


def normalize(text: Optional[str]) -> str:
    return (text or "").strip().casefold()


def parse_keywords(value) -> list[str]:
    """Keywords may be stored as a list or a comma separated string."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [normalize(str(kw)) for kw in value if normalize(str(kw))]


def keyword_matches(text: str, keyword: str) -> bool:
    text, keyword = normalize(text), normalize(keyword)
    if not keyword:
        return False
    if len(keyword) <= SHORT_KEYWORD_LENGTH:
        return text == keyword
    return keyword in text


@dataclass
class FlowNode:
    id: str
    type: str
    data: dict


class FlowGraph:
    """Read-only view over one flow's nodes and edges."""

    def __init__(self, flow: Flow):
        self.flow = flow
        self.nodes: dict[str, FlowNode] = {}
        for raw in flow.nodes or []:
            node_id = str(raw.get("id"))
            self.nodes[node_id] = FlowNode(id=node_id, type=raw.get("type"), data=raw.get("data") or {})
        self.edges: list[dict] = list(flow.edges or [])

    def node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if node_id is None:
            return None
        return self.nodes.get(str(node_id))

    def trigger_node(self) -> Optional[FlowNode]:
        for node in self.nodes.values():
            if node.type == TRIGGER:
                return node
        return None

    def trigger_keywords(self) -> list[str]:
        trigger = self.trigger_node()
        if trigger is None:
            return []
        return parse_keywords(trigger.data.get("keywords") or trigger.data.get("keyword"))

    def outgoing(self, node_id: str) -> list[dict]:
        return [edge for edge in self.edges if str(edge.get("source")) == str(node_id)]

    def next_id(self, node_id: str) -> Optional[str]:
        """Target of the single plain outgoing edge."""
        for edge in self.outgoing(node_id):
            data = edge.get("data") or {}
            if data.get("fallback") or data.get("keywords"):
                continue
            return str(edge.get("target"))
        return None

    def routes(self, node: FlowNode) -> list[tuple[list[str], str]]:
        routes = []
        for route in node.data.get("routes") or []:
            target = route.get("target") or route.get("targetNodeId")
            if target:
                routes.append((parse_keywords(route.get("keywords") or route.get("keyword")), str(target)))
        for edge in self.outgoing(node.id):
            keywords = parse_keywords((edge.get("data") or {}).get("keywords"))
            if keywords:
                routes.append((keywords, str(edge.get("target"))))
        return routes

    def fallback_target(self, node: FlowNode) -> Optional[str]:
        fallback = node.data.get("fallback") or node.data.get("fallbackTarget")
        if fallback:
            return str(fallback)
        for edge in self.outgoing(node.id):
            if (edge.get("data") or {}).get("fallback"):
                return str(edge.get("target"))
        return None

    def route(self, node: FlowNode, text: str) -> Optional[str]:
        """Target for `text` at a route_by_keyword node, or None."""
        candidates = []
        for order, (keywords, target) in enumerate(self.routes(node)):
            for keyword in keywords:
                if keyword_matches(text, keyword):
                    candidates.append((-len(keyword), order, target))
        if candidates:
            return min(candidates)[2]
        return self.fallback_target(node)


def list_flows(db: Session, tenant_id: str) -> list[Flow]:
    return db.query(Flow).filter(Flow.tenant_id == tenant_id).order_by(Flow.created_at, Flow.id).all()


def select_flow(
    flows: Iterable[Flow],
    text: str,
    preferred_flow_id=None,
) -> tuple[Optional[Flow], bool]:
    """Pick the flow for an inbound text.

    Returns (flow, matched_by_trigger). Active flows are considered first;
    without any active flow every flow is a candidate. A trigger keyword must
    equal the whole text. Without a trigger match the user's current flow is
    kept, otherwise the first flow is used.
    """
    flows = list(flows)
    candidates = [flow for flow in flows if flow.status == "active"] or flows
    if not candidates:
        return None, False

    body = normalize(text)
    if body:
        for flow in candidates:
            if body in FlowGraph(flow).trigger_keywords():
                return flow, True

    if preferred_flow_id is not None:
        for flow in candidates:
            if flow.id == preferred_flow_id:
                return flow, False

    return candidates[0], False


def create_flow(
    db: Session,
    tenant_id: str,
    name: str,
    nodes: list[dict],
    edges: list[dict],
    status: str = "draft",
) -> Flow:
    unknown = {node.get("type") for node in nodes} - NODE_TYPES
    if unknown:
        raise ValueError(f"Unknown node types: {sorted(unknown)}")
    flow = Flow(tenant_id=tenant_id, name=name, nodes=nodes, edges=edges, status=status)
    db.add(flow)
    db.commit()
    db.refresh(flow)
    return flow


def toggle_active(db: Session, tenant_id: str, flow_id) -> Optional[Flow]:
    flow = db.query(Flow).filter(Flow.id == flow_id, Flow.tenant_id == tenant_id).first()
    if flow is None:
        return None
    flow.status = "draft" if flow.status == "active" else "active"
    flow.version = (flow.version or 1) + 1
    db.commit()
    return flow

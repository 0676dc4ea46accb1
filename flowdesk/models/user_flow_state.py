import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid

from flowdesk.database import Base, utcnow


class UserFlowState(Base):
    __tablename__ = "user_flow_states"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", "flow_id", name="uq_user_flow_states_user_flow"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)
    flow_id = Column(Uuid, ForeignKey("flows.id", ondelete="CASCADE"), nullable=False)
    current_node_id = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid

from flowdesk.database import Base, JSONType, utcnow


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, unique=True)
    name = Column(Text)
    api_key = Column(Text, unique=True)
    # restart_keywords, no_agent_message, agent_connected_message, closing_message, otp_template
    config = Column(JSONType, nullable=False, default=dict)
    session_status = Column(Text, nullable=False, default="disconnected")  # disconnected, pending, connected
    last_connected_at = Column(DateTime(timezone=True))
    last_disconnected_at = Column(DateTime(timezone=True))
    last_disconnect_reason = Column(Text)
    messages_count = Column(Integer, nullable=False, default=0)
    assignment_cursor = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

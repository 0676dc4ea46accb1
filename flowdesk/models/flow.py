import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid

from flowdesk.database import Base, JSONType, utcnow


class Flow(Base):
    __tablename__ = "flows"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="draft")  # draft, active
    version = Column(Integer, nullable=False, default=1)
    nodes = Column(JSONType, nullable=False, default=list)  # [{id, type, data}]
    edges = Column(JSONType, nullable=False, default=list)  # [{id, source, target, data?}]
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

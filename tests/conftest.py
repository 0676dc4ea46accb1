import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import flowdesk.models  # noqa: F401  registers tables
from flowdesk.config import Settings
from flowdesk.database import Base
from flowdesk.models import Agent, Flow, Plan, Subscription, Tenant
from flowdesk.runtime import Runtime
from flowdesk.services.event_bus import EventBus
from flowdesk.transport.base import MessagingTransport, SendResult, TransportEvent, TransportHandle


class FakeHandle(TransportHandle):
    """Records every send. Set `fail_with` to make the next sends raise."""

    def __init__(self, transport, tenant_id, listener):
        self.transport = transport
        self.tenant_id = tenant_id
        self.listener = listener
        self.sent = []
        self.fail_with = None
        self.fail_after = None
        self.chats = []
        self.destroyed = False
        self.reinitialized = 0

    async def _record(self, kind, chat_id, **payload):
        if self.fail_with is not None and (self.fail_after is None or len(self.sent) >= self.fail_after):
            raise self.fail_with
        self.transport.counter += 1
        message_id = f"true_{chat_id}_MSG{self.transport.counter}"
        self.sent.append({"kind": kind, "chat_id": chat_id, "id": message_id, **payload})
        return SendResult(transport_message_id=message_id)

    async def send_text(self, chat_id, text):
        return await self._record("message", chat_id, text=text)

    async def send_media(self, chat_id, media, caption=None):
        return await self._record("media", chat_id, media=media, caption=caption)

    async def send_poll(self, chat_id, question, options, allow_multiple_answers=False):
        return await self._record("poll", chat_id, question=question, options=list(options))

    async def fetch_chats(self):
        return self.chats

    async def reinitialize(self):
        self.reinitialized += 1

    async def destroy(self):
        self.destroyed = True

    async def emit(self, event_type, **data):
        await self.listener(TransportEvent(type=event_type, data=data))


class FakeTransport(MessagingTransport):
    def __init__(self):
        self.handles = []
        self.connect_error = None
        self.counter = 0
        # emit ready from inside connect(), before the handle is returned
        self.ready_during_connect = False

    async def connect(self, tenant_id, credential_path, listener):
        if self.connect_error is not None:
            raise self.connect_error
        if self.ready_during_connect:
            await listener(TransportEvent(type="ready"))
        handle = FakeHandle(self, tenant_id, listener)
        self.handles.append(handle)
        return handle

    @property
    def handle(self):
        return self.handles[-1]

    def all_sent(self):
        return [item for handle in self.handles for item in handle.sent]


async def make_ready(registry, tenant_id):
    """Create the session, let it connect and report ready."""
    session = registry.get_or_create(tenant_id)
    await session.connect_task
    await session.handle.emit("ready")
    return session


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=True)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        sessions_dir=str(tmp_path / "sessions"),
        watchdog_timeout_seconds=5,
        reconnect_backoff_seconds=0,
        scheduler_enabled=False,
        otp_ready_wait_seconds=0.2,
        inactivity_closing_message=None,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def runtime(transport, session_factory, test_settings):
    return Runtime(transport, session_factory, config=test_settings, bus=EventBus(), scheduler=Mock())


def seed_tenant(db, tenant_id="t1", message_limit=100, messages_used=0, config=None, api_key=None, status="active"):
    now = datetime.now(timezone.utc)
    tenant = Tenant(tenant_id=tenant_id, name=tenant_id.upper(), api_key=api_key or f"key-{tenant_id}", config=config or {})
    plan = Plan(code=f"plan-{tenant_id}", name="Basic", months=1, message_limit=message_limit)
    db.add_all([tenant, plan])
    db.flush()
    subscription = Subscription(
        tenant_id=tenant_id,
        plan_id=plan.id,
        status=status,
        start_at=now - timedelta(days=1),
        end_at=now + timedelta(days=30),
        messages_used=messages_used,
    )
    db.add(subscription)
    db.commit()
    return tenant, subscription


def seed_agent(db, tenant_id="t1", name="Alice", online=True, status="active", created_at=None):
    agent = Agent(
        tenant_id=tenant_id,
        name=name,
        online=online,
        status=status,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(agent)
    db.commit()
    return agent


def seed_flow(db, nodes, edges, tenant_id="t1", name="Main", status="active", created_at=None):
    flow = Flow(
        tenant_id=tenant_id,
        name=name,
        status=status,
        nodes=nodes,
        edges=edges,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(flow)
    db.commit()
    return flow


def run(coro):
    return asyncio.run(coro)

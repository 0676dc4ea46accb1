import uuid
from datetime import datetime, timedelta, timezone

from conftest import make_ready, run, seed_agent, seed_tenant
from flowdesk.models import Chat, Tenant
from flowdesk.services import event_bus as events
from flowdesk.services.assignment_service import take_round_robin_slot

USER = "77011234567@c.us"


def _texts(transport):
    return [item.get("text") for item in transport.all_sent()]


class TestAutoAssign:
    def test_round_robin_over_online_agents(self, db_session, runtime, transport):
        seed_tenant(db_session)
        now = datetime.now(timezone.utc)
        alice = seed_agent(db_session, name="Alice", created_at=now - timedelta(minutes=2))
        bob = seed_agent(db_session, name="Bob", created_at=now - timedelta(minutes=1))
        seed_agent(db_session, name="Carol", online=False)

        async def scenario():
            await make_ready(runtime.registry, "t1")
            chats = []
            for chat_id in ("1@c.us", "2@c.us", "3@c.us"):
                chats.append(await runtime.assignment.auto_assign(db_session, "t1", chat_id))
            return chats

        chats = run(scenario())

        assert [chat.agent_id for chat in chats] == [alice.id, bob.id, alice.id]
        db_session.expire_all()
        assert db_session.query(Tenant).first().assignment_cursor == 3

    def test_already_assigned_to_online_agent_is_kept(self, db_session, runtime, transport):
        seed_tenant(db_session)
        alice = seed_agent(db_session, name="Alice")
        db_session.add(Chat(tenant_id="t1", chat_id=USER, status="assigned", agent_id=alice.id))
        db_session.commit()

        chat = run(runtime.assignment.auto_assign(db_session, "t1", USER))

        assert chat.agent_id == alice.id
        assert transport.all_sent() == []

    def test_no_agent_notifies_user(self, db_session, runtime, transport):
        seed_tenant(db_session)

        async def scenario():
            await make_ready(runtime.registry, "t1")
            return await runtime.assignment.assign_chat(db_session, "t1", USER)

        result = run(scenario())

        assert result.ok is False
        assert result.error_code == "no_agent"
        assert _texts(transport) == [runtime.config.no_agent_message]
        assert db_session.query(Chat).filter(Chat.chat_id == USER).one().status == "pending"

    def test_notification_failure_does_not_block_assignment(self, db_session, runtime, transport):
        seed_tenant(db_session)
        seed_agent(db_session, name="Alice")

        chat = run(runtime.assignment.auto_assign(db_session, "t1", USER))

        assert chat.status == "assigned"
        assert transport.all_sent() == []


class TestAssignManually:
    def test_assigns_and_publishes(self, db_session, runtime, transport):
        seed_tenant(db_session)
        bob = seed_agent(db_session, name="Bob", online=False)
        received = []
        runtime.bus.subscribe(events.CHAT_ASSIGNED, received.append)

        async def scenario():
            await make_ready(runtime.registry, "t1")
            return await runtime.assignment.assign_chat(db_session, "t1", USER, bob.id)

        result = run(scenario())

        assert result.ok is True
        assert result.value.status == "assigned"
        assert result.value.agent_id == bob.id
        assert _texts(transport) == ["You are now connected with Bob."]
        assert received[0].data["agent_name"] == "Bob"

    def test_unknown_agent_rejected(self, db_session, runtime):
        seed_tenant(db_session)

        result = run(runtime.assignment.assign_chat(db_session, "t1", USER, uuid.uuid4()))

        assert result.ok is False
        assert result.error_code == "agent_not_found"

    def test_agent_of_other_tenant_rejected(self, db_session, runtime):
        seed_tenant(db_session)
        other = seed_agent(db_session, tenant_id="t2", name="Eve")

        result = run(runtime.assignment.assign_chat(db_session, "t1", USER, other.id))

        assert result.error_code == "agent_not_found"

    def test_inactive_agent_rejected(self, db_session, runtime):
        seed_tenant(db_session)
        gone = seed_agent(db_session, name="Gone", status="inactive")

        result = run(runtime.assignment.assign_chat(db_session, "t1", USER, gone.id))

        assert result.error_code == "agent_not_found"


class TestRoundRobinSlot:
    def test_slots_are_consecutive(self, db_session):
        seed_tenant(db_session)

        slots = [take_round_robin_slot(db_session, "t1") for _ in range(3)]
        db_session.commit()

        assert slots == [0, 1, 2]

    def test_slot_ignores_stale_tenant_in_session(self, db_session, session_factory):
        tenant, _ = seed_tenant(db_session)
        assert tenant.assignment_cursor == 0

        other = session_factory()
        try:
            assert take_round_robin_slot(other, "t1") == 0
            other.commit()
        finally:
            other.close()

        # db_session still holds the tenant loaded with cursor 0
        assert take_round_robin_slot(db_session, "t1") == 1
        db_session.commit()
        db_session.expire_all()
        assert db_session.query(Tenant).first().assignment_cursor == 2

    def test_unknown_tenant_gets_first_slot(self, db_session):
        assert take_round_robin_slot(db_session, "missing") == 0

import asyncio
from unittest.mock import AsyncMock, Mock

from conftest import make_ready, run, seed_flow, seed_tenant
from flowdesk.models import Message, UserFlowState
from flowdesk.services import event_bus as events
from flowdesk.services.event_bus import EventBus
from flowdesk.services.inbound_service import InboundService, KeyedLocks, normalize_message

USER = "77011234567@c.us"


def _raw(body, message_id="ABC1", sender=USER, **extra):
    return {"id": {"_serialized": f"false_{sender}_{message_id}"}, "from": sender, "body": body, "type": "chat", **extra}


class TestNormalizeMessage:
    def test_serialized_id_and_fields(self):
        message = normalize_message("t1", _raw("hello"))
        assert message.transport_message_id == f"false_{USER}_ABC1"
        assert message.sender_id == USER
        assert message.body == "hello"
        assert message.is_conversation is True

    def test_groups_and_broadcasts_are_not_conversations(self):
        assert normalize_message("t1", {"from": "123@g.us"}).is_conversation is False
        assert normalize_message("t1", {"from": "status@broadcast"}).is_conversation is False


class TestKeyedLocks:
    def test_same_key_serialized_and_cleaned_up(self):
        locks = KeyedLocks()
        order = []

        async def worker(name, delay):
            async with locks.hold(("t1", USER)):
                order.append(f"{name}-start")
                await asyncio.sleep(delay)
                order.append(f"{name}-end")

        async def scenario():
            await asyncio.gather(worker("a", 0.02), worker("b", 0))

        run(scenario())

        assert order == ["a-start", "a-end", "b-start", "b-end"]
        assert len(locks) == 0


class TestOnInboundMessage:
    def _service(self, session_factory, interpreter=None, inactivity=None):
        interpreter = interpreter or Mock(handle_inbound=AsyncMock(return_value=None))
        return InboundService(session_factory, EventBus(), interpreter, inactivity)

    def test_stores_publishes_and_runs_flow(self, db_session, session_factory):
        service = self._service(session_factory)
        received = []
        service.bus.subscribe(events.INBOUND_MESSAGE, received.append)

        run(service.on_inbound_message("t1", _raw("hello")))

        assert db_session.query(Message).filter(Message.direction == "inbound").count() == 1
        assert received[0].data["body"] == "hello"
        service.interpreter.handle_inbound.assert_awaited_once()
        assert service.interpreter.handle_inbound.await_args.args[1:] == ("t1", USER, "hello")

    def test_duplicate_delivery_processed_once(self, db_session, session_factory):
        service = self._service(session_factory)

        run(service.on_inbound_message("t1", _raw("hello")))
        run(service.on_inbound_message("t1", _raw("hello")))

        assert db_session.query(Message).count() == 1
        assert service.interpreter.handle_inbound.await_count == 1

    def test_own_messages_ignored(self, db_session, session_factory):
        service = self._service(session_factory)

        run(service.on_inbound_message("t1", _raw("sent from phone", fromMe=True)))

        assert db_session.query(Message).count() == 0
        service.interpreter.handle_inbound.assert_not_awaited()

    def test_group_message_stored_but_not_routed(self, db_session, session_factory):
        service = self._service(session_factory)

        run(service.on_inbound_message("t1", _raw("hi all", sender="123@g.us")))

        assert db_session.query(Message).count() == 1
        service.interpreter.handle_inbound.assert_not_awaited()

    def test_resets_inactivity_timer(self, db_session, runtime, session_factory):
        seed_tenant(db_session)
        seed_flow(
            db_session,
            [{"id": "t", "type": "trigger", "data": {}}, {"id": "w", "type": "wait_for_reply", "data": {}}],
            [{"id": "e", "source": "t", "target": "w"}],
        )
        inactivity = Mock()
        service = InboundService(session_factory, runtime.bus, runtime.interpreter, inactivity)

        run(service.on_inbound_message("t1", _raw("hello")))

        assert db_session.query(UserFlowState).one().current_node_id == "w"
        inactivity.reset.assert_called_once_with("t1", USER, assigned=False)


class TestEndToEnd:
    def test_webhook_message_reaches_flow(self, db_session, runtime, transport):
        seed_tenant(db_session)
        seed_flow(
            db_session,
            [
                {"id": "t", "type": "trigger", "data": {}},
                {"id": "s", "type": "send_message", "data": {"message": "Welcome!"}},
                {"id": "w", "type": "wait_for_reply", "data": {}},
            ],
            [{"id": "e1", "source": "t", "target": "s"}, {"id": "e2", "source": "s", "target": "w"}],
        )

        async def scenario():
            session = await make_ready(runtime.registry, "t1")
            await session.handle.emit("message", **_raw("hello"))

        run(scenario())

        assert [item["text"] for item in transport.all_sent()] == ["Welcome!"]
        runtime.scheduler.scheduler.add_job.assert_called_once()

from conftest import run
from flowdesk.services import event_bus as events
from flowdesk.services.event_bus import EventBus


class TestPublish:
    def test_type_and_tenant_subscribers_both_receive(self):
        bus = EventBus()
        by_type, by_tenant = [], []
        bus.subscribe(events.SESSION_READY, by_type.append)
        bus.subscribe_tenant("t1", by_tenant.append)

        event = run(bus.publish("t1", events.SESSION_READY, {"message": "connected"}))

        assert by_type == [event]
        assert by_tenant == [event]
        assert event.to_dict()["type"] == "ready"
        assert event.to_dict()["tenant_id"] == "t1"

    def test_tenant_subscriber_ignores_other_tenants(self):
        bus = EventBus()
        received = []
        bus.subscribe_tenant("t1", received.append)

        run(bus.publish("t2", events.SESSION_QR, {"qr": "abc"}))

        assert received == []

    def test_async_handler_is_awaited(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event.data)

        bus.subscribe(events.POLL_VOTE, handler)
        run(bus.publish("t1", events.POLL_VOTE, {"labels": ["Yes"]}))

        assert received == [{"labels": ["Yes"]}]

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(events.CHAT_CLOSED, broken)
        bus.subscribe(events.CHAT_CLOSED, received.append)

        run(bus.publish("t1", events.CHAT_CLOSED, {}))

        assert len(received) == 1


class TestUnsubscribe:
    def test_unsubscribe_tenant_stops_delivery(self):
        bus = EventBus()
        received = []
        bus.subscribe_tenant("t1", received.append)
        bus.unsubscribe_tenant("t1", received.append)

        run(bus.publish("t1", events.SESSION_QR, {}))

        assert received == []

    def test_unsubscribe_unknown_handler_is_noop(self):
        bus = EventBus()
        bus.unsubscribe(events.SESSION_QR, print)
        bus.unsubscribe_tenant("t1", print)

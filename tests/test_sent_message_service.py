from conftest import seed_tenant
from flowdesk.models import SentMessage
from flowdesk.services.sent_message_service import (
    extract_order_number,
    extract_parent_message_id,
    extract_selected,
    extract_voter,
    map_selected_labels,
    record_answer,
    record_sent,
    resolve_poll_by_source_id,
    short_id,
)

POLL_ID = "true_77011234567@c.us_3EB0A1B2C3"


def _record_poll(db, transport_message_id=POLL_ID, tenant_id="t1", correlation_id="confirm:1042"):
    record_sent(
        db,
        tenant_id=tenant_id,
        recipient="77011234567@c.us",
        kind="poll",
        transport_message_id=transport_message_id,
        payload={"question": "Confirm?", "options": ["Yes", "No"], "correlation_id": correlation_id},
        correlation_id=correlation_id,
    )
    return db.query(SentMessage).filter(SentMessage.transport_message_id == transport_message_id).first()


class TestIdHelpers:
    def test_short_id_is_last_segment(self):
        assert short_id(POLL_ID) == "3EB0A1B2C3"
        assert short_id("ABC") == "ABC"
        assert short_id(None) is None

    def test_parent_id_paths(self):
        assert extract_parent_message_id({"pollCreationMessageKey": {"_serialized": "a"}}) == "a"
        assert extract_parent_message_id({"parentMsgKey": {"id": "b"}}) == "b"
        assert extract_parent_message_id({"quotedStanzaID": "c"}) == "c"
        assert extract_parent_message_id({}) is None

    def test_selected_paths(self):
        assert extract_selected({"selectedOptions": [{"name": "Yes"}]}) == [{"name": "Yes"}]
        assert extract_selected({"vote": {"selectedOptions": [0]}}) == [0]
        assert extract_selected({"choices": "No"}) == ["No"]
        assert extract_selected({"selectedOptions": []}) == []

    def test_voter_keys(self):
        assert extract_voter({"sender": "1@c.us"}) == "1@c.us"
        assert extract_voter({"voterId": "2@c.us"}) == "2@c.us"
        assert extract_voter({}) is None


class TestMapSelectedLabels:
    def test_named_selection(self):
        assert map_selected_labels([{"name": "Yes"}], ["Yes", "No"]) == ["Yes"]

    def test_index_selection(self):
        assert map_selected_labels([1], ["Yes", "No"]) == ["No"]

    def test_index_into_named_options(self):
        assert map_selected_labels([0], [{"name": "Yes"}, {"name": "No"}]) == ["Yes"]

    def test_string_selection(self):
        assert map_selected_labels(["Maybe"], ["Yes", "No"]) == ["Maybe"]


class TestOrderNumber:
    def test_confirm_prefix(self):
        assert extract_order_number("confirm:1042") == "1042"
        assert extract_order_number("CONFIRM:7") == "7"

    def test_first_digit_run(self):
        assert extract_order_number("order-55-b-66") == "55"

    def test_no_digits(self):
        assert extract_order_number("abc") is None
        assert extract_order_number(None) is None


class TestRecordSent:
    def test_duplicate_transport_id_ignored(self, db_session):
        seed_tenant(db_session)
        _record_poll(db_session)

        inserted = record_sent(
            db_session,
            tenant_id="t1",
            recipient="77011234567@c.us",
            kind="poll",
            transport_message_id=POLL_ID,
            payload={},
        )

        assert inserted is False
        assert db_session.query(SentMessage).count() == 1

    def test_short_id_stored(self, db_session):
        sent = _record_poll(db_session)
        assert sent.short_id == "3EB0A1B2C3"
        assert sent.answered is False


class TestResolvePoll:
    def test_exact_match(self, db_session):
        sent = _record_poll(db_session)
        assert resolve_poll_by_source_id(db_session, POLL_ID).id == sent.id

    def test_suffix_match(self, db_session):
        sent = _record_poll(db_session)
        assert resolve_poll_by_source_id(db_session, "false_other_3EB0A1B2C3").id == sent.id

    def test_short_id_match(self, db_session):
        sent = _record_poll(db_session)
        assert resolve_poll_by_source_id(db_session, "3EB0A1B2C3").id == sent.id

    def test_scoped_to_tenant(self, db_session):
        _record_poll(db_session, tenant_id="t2")
        assert resolve_poll_by_source_id(db_session, POLL_ID, tenant_id="t1") is None

    def test_text_messages_are_not_polls(self, db_session):
        record_sent(
            db_session,
            tenant_id="t1",
            recipient="1@c.us",
            kind="message",
            transport_message_id="true_1@c.us_TEXT1",
            payload={},
        )
        assert resolve_poll_by_source_id(db_session, "true_1@c.us_TEXT1") is None


class TestRecordAnswer:
    def test_answer_locks_once(self, db_session):
        sent = _record_poll(db_session)

        first = record_answer(db_session, sent.id, ["Yes"], [{"name": "Yes"}], "1042")
        second = record_answer(db_session, sent.id, ["No"], [{"name": "No"}], "1042")

        assert first is True
        assert second is False
        db_session.expire_all()
        stored = db_session.get(SentMessage, sent.id)
        assert stored.answered is True
        assert stored.answer["labels"] == ["Yes"]
        assert stored.answer["order_number"] == "1042"

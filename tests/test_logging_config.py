import json
import logging
import uuid

from flowdesk.logging_config import JSONFormatter, TextFormatter, get_logger, setup_logging


def _record(message="Chat assigned", **extra):
    record = logging.LogRecord("flowdesk.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "flowdesk.test"
        assert data["message"] == "Chat assigned"
        assert "context" not in data
        assert "tenant_id" not in data

    def test_context_is_serialized(self):
        agent_id = uuid.uuid4()
        data = json.loads(JSONFormatter().format(_record(context={"agent_id": agent_id})))
        assert data["context"] == {"agent_id": str(agent_id)}

    def test_tenant_id_is_lifted(self):
        data = json.loads(JSONFormatter().format(_record(context={"tenant_id": "t1", "chat_id": "7701@c.us"})))
        assert data["tenant_id"] == "t1"
        assert data["context"]["chat_id"] == "7701@c.us"


class TestTextFormatter:
    def test_tenant_and_context_inline(self):
        line = TextFormatter().format(_record(context={"tenant_id": "t1", "chat_id": "7701@c.us"}))
        assert line == "INFO flowdesk.test [t1] Chat assigned chat_id=7701@c.us"

    def test_without_context(self):
        assert TextFormatter().format(_record()) == "INFO flowdesk.test Chat assigned"


class TestSetupLogging:
    def test_text_format_installs_text_formatter(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("debug", "text")
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[-1].formatter, TextFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


def test_get_logger_is_namespaced():
    assert get_logger("session_manager").name == "flowdesk.session_manager"

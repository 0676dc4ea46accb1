from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from conftest import run
from flowdesk.services import alert_service
from flowdesk.services.alert_service import alert_error, alert_warning, format_alert, send_alert


@pytest.fixture(autouse=True)
def clean_throttle():
    alert_service.reset_throttle()
    yield
    alert_service.reset_throttle()


@pytest.fixture
def configured():
    with patch("flowdesk.services.alert_service.settings") as mock_settings:
        mock_settings.alert_bot_token = "test-token"
        mock_settings.alert_chat_id = "test-chat"
        mock_settings.alert_cooldown_seconds = 300
        yield mock_settings


@pytest.fixture
def telegram():
    with patch("flowdesk.services.alert_service.httpx.AsyncClient") as mock_client_class:
        client = MagicMock()
        client.post = AsyncMock(return_value=Mock(status_code=200))
        mock_client_class.return_value.__aenter__ = AsyncMock(return_value=client)
        mock_client_class.return_value.__aexit__ = AsyncMock(return_value=False)
        yield client


class TestFormatAlert:
    def test_includes_level_and_context(self):
        text = format_alert("WARNING", "WhatsApp auth failure", {"tenant_id": "t1"})
        assert "*WARNING*" in text
        assert "WhatsApp auth failure" in text
        assert "tenant_id: t1" in text

    def test_without_context(self):
        assert "```" not in format_alert("ERROR", "x")


class TestSendAlert:
    @patch("flowdesk.services.alert_service.settings")
    def test_returns_false_when_not_configured(self, mock_settings):
        mock_settings.alert_bot_token = None
        mock_settings.alert_chat_id = None
        assert run(send_alert("ERROR", "Test message")) is False

    def test_posts_to_telegram(self, configured, telegram):
        result = run(send_alert("WARNING", "Session not ready in time, recycling", {"tenant_id": "t1"}))

        assert result is True
        url = telegram.post.call_args[0][0]
        payload = telegram.post.call_args[1]["json"]
        assert "api.telegram.org/bottest-token" in url
        assert payload["chat_id"] == "test-chat"
        assert "tenant_id: t1" in payload["text"]

    def test_http_error_returns_false(self, configured, telegram):
        telegram.post.side_effect = httpx.ConnectError("boom")
        assert run(send_alert("ERROR", "x")) is False

    def test_rejected_by_telegram_returns_false(self, configured, telegram):
        telegram.post.return_value = Mock(status_code=400)
        assert run(send_alert("ERROR", "x")) is False


class TestThrottle:
    def test_repeat_for_same_tenant_is_suppressed(self, configured, telegram):
        assert run(send_alert("WARNING", "WhatsApp auth failure", {"tenant_id": "t1"})) is True
        assert run(send_alert("WARNING", "WhatsApp auth failure", {"tenant_id": "t1"})) is False
        assert telegram.post.await_count == 1

    def test_other_tenant_is_not_suppressed(self, configured, telegram):
        run(send_alert("WARNING", "WhatsApp auth failure", {"tenant_id": "t1"}))
        assert run(send_alert("WARNING", "WhatsApp auth failure", {"tenant_id": "t2"})) is True
        assert telegram.post.await_count == 2

    def test_zero_cooldown_never_suppresses(self, configured, telegram):
        configured.alert_cooldown_seconds = 0
        run(send_alert("ERROR", "x", {"tenant_id": "t1"}))
        assert run(send_alert("ERROR", "x", {"tenant_id": "t1"})) is True


class TestAlertHelpers:
    @patch("flowdesk.services.alert_service.send_alert", new_callable=AsyncMock)
    def test_alert_error_uses_error_level(self, mock_send):
        run(alert_error("Failed", {"a": 1}))
        mock_send.assert_awaited_once_with("ERROR", "Failed", {"a": 1})

    @patch("flowdesk.services.alert_service.send_alert", new_callable=AsyncMock)
    def test_alert_warning_uses_warning_level(self, mock_send):
        run(alert_warning("Careful"))
        mock_send.assert_awaited_once_with("WARNING", "Careful", None)

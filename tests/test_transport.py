from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from conftest import run
from flowdesk.services.errors import TransportError
from flowdesk.transport.base import TransportEvent, to_chat_id
from flowdesk.transport.gateway import GatewayClient, GatewayHandle, GatewayTransport


def _response(status_code=200, json_data=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.content = b"{}" if json_data is not None else b""
    response.json.return_value = json_data
    response.text = text
    return response


def _client_mock(mock_client_class, response=None, side_effect=None):
    client = MagicMock()
    client.request = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client_class.return_value.__aenter__.return_value = client
    return client


class TestChatId:
    def test_digits_plus_suffix(self):
        assert to_chat_id("+7 (701) 123-45-67") == "77011234567@c.us"

    def test_existing_address_passes_through(self):
        assert to_chat_id("123-456@g.us") == "123-456@g.us"

    def test_custom_suffix(self):
        assert to_chat_id("7701", "@s.whatsapp.net") == "7701@s.whatsapp.net"

    def test_no_digits_rejected(self):
        with pytest.raises(ValueError):
            to_chat_id("hello")


class TestTransportEvent:
    def test_logout_reasons(self):
        assert TransportEvent("disconnected", {"reason": "logout"}).is_logout is True
        assert TransportEvent("disconnected", {"reason": "NAVIGATION"}).is_logout is False
        assert TransportEvent("disconnected").is_logout is False


class TestGatewayClient:
    @patch("flowdesk.transport.gateway.httpx.AsyncClient")
    def test_sends_bearer_token(self, mock_client_class):
        client = _client_mock(mock_client_class, _response(json_data={"id": "x"}))

        data = run(GatewayClient("http://gw/", token="secret").request("POST", "/sessions/t1/start", {"a": 1}))

        assert data == {"id": "x"}
        args, kwargs = client.request.call_args
        assert args == ("POST", "http://gw/sessions/t1/start")
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["json"] == {"a": 1}

    @patch("flowdesk.transport.gateway.httpx.AsyncClient")
    def test_unreachable_gateway_is_session_lost(self, mock_client_class):
        _client_mock(mock_client_class, side_effect=httpx.ConnectError("refused"))

        with pytest.raises(TransportError) as exc:
            run(GatewayClient("http://gw").request("GET", "/x"))

        assert exc.value.session_lost is True

    @patch("flowdesk.transport.gateway.httpx.AsyncClient")
    def test_missing_session_is_session_lost(self, mock_client_class):
        _client_mock(mock_client_class, _response(status_code=404, text="no session"))

        with pytest.raises(TransportError) as exc:
            run(GatewayClient("http://gw").request("POST", "/sessions/t1/messages"))

        assert exc.value.session_lost is True

    @patch("flowdesk.transport.gateway.httpx.AsyncClient")
    def test_rejected_request_keeps_session(self, mock_client_class):
        _client_mock(mock_client_class, _response(status_code=400, text="bad chat id"))

        with pytest.raises(TransportError) as exc:
            run(GatewayClient("http://gw").request("POST", "/sessions/t1/messages"))

        assert exc.value.session_lost is False
        assert "bad chat id" in exc.value.message


class TestGatewayHandle:
    def test_send_poll_payload_and_serialized_id(self):
        client = Mock()
        client.request = AsyncMock(return_value={"id": {"_serialized": "true_1@c.us_ABC"}})
        handle = GatewayHandle(client, "t1", AsyncMock())

        result = run(handle.send_poll("1@c.us", "Confirm?", ["Yes", "No"]))

        assert result.transport_message_id == "true_1@c.us_ABC"
        method, path, payload = client.request.call_args.args
        assert (method, path) == ("POST", "/sessions/t1/polls")
        assert payload["options"] == ["Yes", "No"]
        assert payload["allowMultipleAnswers"] is False

    def test_fetch_chats_unwraps_list(self):
        client = Mock()
        client.request = AsyncMock(return_value={"chats": [{"id": "1@c.us"}]})

        assert run(GatewayHandle(client, "t1", AsyncMock()).fetch_chats()) == [{"id": "1@c.us"}]

    def test_destroy_swallows_gateway_errors(self):
        client = Mock()
        client.request = AsyncMock(side_effect=TransportError("gone", session_lost=True))

        run(GatewayHandle(client, "t1", AsyncMock()).destroy())


class TestGatewayTransport:
    def test_connect_registers_webhook(self):
        transport = GatewayTransport("http://gw", None, callback_base_url="https://api.example.com/")
        transport.client.request = AsyncMock(return_value={})

        handle = run(transport.connect("t1", "./sessions/session-t1", AsyncMock()))

        assert isinstance(handle, GatewayHandle)
        method, path, payload = transport.client.request.call_args.args
        assert path == "/sessions/t1/start"
        assert payload["webhookUrl"] == "https://api.example.com/webhook/t1/events"
        assert payload["credentialPath"] == "./sessions/session-t1"

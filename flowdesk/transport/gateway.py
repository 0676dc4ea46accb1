"""Transport backed by an HTTP WhatsApp Web gateway sidecar.

The gateway runs the browser session and posts lifecycle and inbound events
back to `/webhook/{tenant_id}/events`.
"""

from typing import Any, List, Optional

import httpx

from flowdesk.logging_config import get_logger
from flowdesk.services.errors import TransportError
from flowdesk.transport.base import EventListener, MessagingTransport, SendResult, TransportHandle

logger = get_logger("gateway_transport")

SESSION_GONE_STATUSES = {404, 410}


class GatewayClient:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", json=payload, headers=self._headers()
                )
        except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError) as e:
            raise TransportError(f"Gateway unreachable: {e}", session_lost=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Gateway request failed: {e}") from e

        if response.status_code in SESSION_GONE_STATUSES:
            raise TransportError(f"Gateway session gone ({response.status_code})", session_lost=True)
        if response.status_code >= 400:
            raise TransportError(f"Gateway error {response.status_code}: {response.text[:200]}")
        if not response.content:
            return {}
        return response.json()


class GatewayHandle(TransportHandle):
    def __init__(self, client: GatewayClient, tenant_id: str, listener: EventListener):
        self.client = client
        self.tenant_id = tenant_id
        self.listener = listener

    def _path(self, suffix: str = "") -> str:
        return f"/sessions/{self.tenant_id}{suffix}"

    @staticmethod
    def _result(data: Any) -> SendResult:
        data = data if isinstance(data, dict) else {}
        message_id = data.get("id")
        if isinstance(message_id, dict):
            message_id = message_id.get("_serialized") or message_id.get("id")
        return SendResult(transport_message_id=message_id or data.get("messageId"), raw=data)

    async def send_text(self, chat_id: str, text: str) -> SendResult:
        data = await self.client.request("POST", self._path("/messages"), {"chatId": chat_id, "text": text})
        return self._result(data)

    async def send_media(self, chat_id: str, media: dict, caption: Optional[str] = None) -> SendResult:
        data = await self.client.request(
            "POST", self._path("/media"), {"chatId": chat_id, "media": media, "caption": caption}
        )
        return self._result(data)

    async def send_poll(
        self,
        chat_id: str,
        question: str,
        options: List[str],
        allow_multiple_answers: bool = False,
    ) -> SendResult:
        data = await self.client.request(
            "POST",
            self._path("/polls"),
            {
                "chatId": chat_id,
                "question": question,
                "options": options,
                "allowMultipleAnswers": allow_multiple_answers,
            },
        )
        return self._result(data)

    async def fetch_chats(self) -> List[dict]:
        data = await self.client.request("GET", self._path("/chats"))
        if isinstance(data, dict):
            data = data.get("chats", [])
        return data or []

    async def reinitialize(self) -> None:
        await self.client.request("POST", self._path("/reinitialize"))

    async def destroy(self) -> None:
        try:
            await self.client.request("DELETE", self._path())
        except TransportError as e:
            logger.warning(f"Gateway destroy failed for {self.tenant_id}: {e.message}")


class GatewayTransport(MessagingTransport):
    def __init__(self, base_url: str, token: Optional[str], callback_base_url: str, timeout: float = 30.0):
        self.client = GatewayClient(base_url, token, timeout)
        self.callback_base_url = callback_base_url.rstrip("/")

    async def connect(self, tenant_id: str, credential_path: str, listener: EventListener) -> TransportHandle:
        await self.client.request(
            "POST",
            f"/sessions/{tenant_id}/start",
            {
                "credentialPath": credential_path,
                "webhookUrl": f"{self.callback_base_url}/webhook/{tenant_id}/events",
            },
        )
        logger.info(f"Gateway session started for {tenant_id}")
        return GatewayHandle(self.client, tenant_id, listener)

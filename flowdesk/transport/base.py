import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

QR = "qr"
AUTHENTICATED = "authenticated"
READY = "ready"
DISCONNECTED = "disconnected"
AUTH_FAILURE = "auth_failure"
MESSAGE = "message"
VOTE_UPDATE = "vote_update"

LOGOUT_REASONS = {"LOGOUT", "LOGGED_OUT", "UNPAIRED", "UNPAIRED_IDLE"}


@dataclass
class SendResult:
    transport_message_id: Optional[str]
    raw: Optional[dict] = None


@dataclass
class TransportEvent:
    """Lifecycle or inbound event emitted by a transport handle."""

    type: str
    data: dict = field(default_factory=dict)

    @property
    def reason(self) -> Optional[str]:
        return self.data.get("reason")

    @property
    def is_logout(self) -> bool:
        return str(self.reason or "").upper() in LOGOUT_REASONS


EventListener = Callable[[TransportEvent], Awaitable[None]]


def to_chat_id(recipient: str, suffix: str = "@c.us") -> str:
    """Phone number to chat address: digits only plus the chat suffix.

    Values that already carry a domain (`...@c.us`, `...@g.us`) pass through.
    """
    recipient = str(recipient or "").strip()
    if "@" in recipient:
        return recipient
    digits = re.sub(r"\D", "", recipient)
    if not digits:
        raise ValueError(f"Recipient has no digits: {recipient!r}")
    return f"{digits}{suffix}"


class TransportHandle(ABC):
    """One live connection for one tenant."""

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> SendResult:
        pass

    @abstractmethod
    async def send_media(self, chat_id: str, media: dict, caption: Optional[str] = None) -> SendResult:
        pass

    @abstractmethod
    async def send_poll(
        self,
        chat_id: str,
        question: str,
        options: List[str],
        allow_multiple_answers: bool = False,
    ) -> SendResult:
        pass

    @abstractmethod
    async def fetch_chats(self) -> List[dict]:
        pass

    @abstractmethod
    async def reinitialize(self) -> None:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        pass


class MessagingTransport(ABC):
    """Abstract factory for per-tenant transport handles."""

    @abstractmethod
    async def connect(self, tenant_id: str, credential_path: str, listener: EventListener) -> TransportHandle:
        """Start (or resume) a session. Events are reported through `listener`."""
        pass

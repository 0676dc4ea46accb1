from flowdesk.transport.base import (
    MessagingTransport,
    SendResult,
    TransportEvent,
    TransportHandle,
    to_chat_id,
)

__all__ = ["MessagingTransport", "TransportHandle", "TransportEvent", "SendResult", "to_chat_id"]

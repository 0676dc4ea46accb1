from enum import Enum
from typing import Union


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    PENDING = "pending"
    CONNECTED = "connected"


class ChatStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    CLOSED = "closed"


SESSION_TRANSITIONS = {
    SessionStatus.DISCONNECTED: [SessionStatus.PENDING, SessionStatus.CONNECTED],
    SessionStatus.PENDING: [SessionStatus.CONNECTED, SessionStatus.DISCONNECTED],
    SessionStatus.CONNECTED: [SessionStatus.DISCONNECTED, SessionStatus.PENDING],
}

CHAT_TRANSITIONS = {
    ChatStatus.PENDING: [ChatStatus.ASSIGNED, ChatStatus.CLOSED],
    # reassignment keeps the chat assigned
    ChatStatus.ASSIGNED: [ChatStatus.ASSIGNED, ChatStatus.CLOSED, ChatStatus.PENDING],
    ChatStatus.CLOSED: [ChatStatus.PENDING, ChatStatus.ASSIGNED],
}

State = Union[SessionStatus, ChatStatus]


class InvalidTransitionError(Exception):
    def __init__(self, from_state: State, to_state: State):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: State, to_state: State) -> bool:
    """Check if transition is valid."""
    if type(from_state) is not type(to_state):
        return False
    table = SESSION_TRANSITIONS if isinstance(from_state, SessionStatus) else CHAT_TRANSITIONS
    return to_state in table.get(from_state, [])


def transition(from_state: State, to_state: State) -> State:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def reopen_chat(current: ChatStatus) -> ChatStatus:
    """Closed chat receives new inbound activity."""
    return transition(current, ChatStatus.PENDING)


def assign_chat(current: ChatStatus) -> ChatStatus:
    return transition(current, ChatStatus.ASSIGNED)


def close_chat(current: ChatStatus) -> ChatStatus:
    return transition(current, ChatStatus.CLOSED)

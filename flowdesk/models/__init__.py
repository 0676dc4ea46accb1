from flowdesk.models.agent import Agent
from flowdesk.models.chat import Chat
from flowdesk.models.flow import Flow
from flowdesk.models.message import Message
from flowdesk.models.otp_code import OtpCode
from flowdesk.models.plan import Plan
from flowdesk.models.poll_vote import PollVote
from flowdesk.models.queued_message import QueuedMessage
from flowdesk.models.scheduled_message import ScheduledMessage
from flowdesk.models.sent_message import SentMessage
from flowdesk.models.subscription import Subscription
from flowdesk.models.template import Template
from flowdesk.models.tenant import Tenant
from flowdesk.models.user_flow_state import UserFlowState

__all__ = [
    "Tenant",
    "Plan",
    "Subscription",
    "QueuedMessage",
    "SentMessage",
    "PollVote",
    "Flow",
    "UserFlowState",
    "Chat",
    "Agent",
    "Message",
    "Template",
    "ScheduledMessage",
    "OtpCode",
]

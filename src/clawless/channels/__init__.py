"""Channel adapters and bus exports."""

from clawless.channels.base import BaseChannel, MessagingContext
from clawless.channels.bus import MessageBus
from clawless.channels.events import InboundMessage, OutboundMessage
from clawless.channels.manager import ChannelManager

__all__ = [
    "BaseChannel",
    "ChannelManager",
    "InboundMessage",
    "MessageBus",
    "MessagingContext",
    "OutboundMessage",
]

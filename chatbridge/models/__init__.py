from chatbridge.models.chat import Chat, ChatRef
from chatbridge.models.enums import AGGREGATOR_SOURCES, MessageSource, MessageType, ResponseMode
from chatbridge.models.message import Message

__all__ = [
    "AGGREGATOR_SOURCES",
    "Chat",
    "ChatRef",
    "Message",
    "MessageSource",
    "MessageType",
    "ResponseMode",
]

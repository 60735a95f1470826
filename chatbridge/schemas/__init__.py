from chatbridge.schemas.api import SendMessageRequest, SendMessageResponse
from chatbridge.schemas.brevo import (
    AgentMessageEvent,
    EmptyEvent,
    VisitorMessageEvent,
    WebhookPayloadError,
    parse_brevo_webhook,
)
from chatbridge.schemas.telegram import TelegramUpdate

__all__ = [
    "AgentMessageEvent",
    "EmptyEvent",
    "SendMessageRequest",
    "SendMessageResponse",
    "TelegramUpdate",
    "VisitorMessageEvent",
    "WebhookPayloadError",
    "parse_brevo_webhook",
]

from chatbridge.services.channels.base import (
    MediaFetchError,
    MediaPayload,
    MediaReference,
    NormalizedInbound,
    PlatformAdapter,
)
from chatbridge.services.channels.brevo import BrevoService
from chatbridge.services.channels.telegram import TelegramService

__all__ = [
    "BrevoService",
    "MediaFetchError",
    "MediaPayload",
    "MediaReference",
    "NormalizedInbound",
    "PlatformAdapter",
    "TelegramService",
]

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from chatbridge.models import ChatRef, Message, MessageSource


class MediaFetchError(Exception):
    """Attachment could not be downloaded from the platform."""


@dataclass(frozen=True)
class MediaReference:
    locator: str  # platform file id or download link
    filename: str
    content_type: str


@dataclass
class MediaPayload:
    data: bytes
    filename: str
    content_type: str


@dataclass
class NormalizedInbound:
    """One platform event translated into the canonical model.

    `message.chat_id` stays empty until the chat is resolved against the store.
    """

    chat: ChatRef
    message: Message
    event_id: Optional[str] = None
    media: Optional[MediaReference] = None
    reply_handle: Optional[str] = None

    @property
    def is_incoming(self) -> bool:
        return self.message.is_incoming


class PlatformAdapter(ABC):
    """Translate one channel's events to canonical messages and send replies back."""

    name: str = ""

    @abstractmethod
    def normalize_inbound(self, raw: Any) -> Optional[NormalizedInbound]:
        """Return None for events that must be ignored."""
        pass

    @abstractmethod
    async def fetch_media(self, reference: MediaReference) -> MediaPayload:
        pass

    @abstractmethod
    async def send_outbound(self, handle: str, text: str) -> Optional[str]:
        """Send text to the platform. Returns the external message id, or None on failure."""
        pass

    def outbound_source(self, inbound: NormalizedInbound) -> MessageSource:
        return inbound.message.source

    async def aclose(self) -> None:
        pass


async def download_bytes(client: httpx.AsyncClient, url: str, max_bytes: int = 0) -> bytes:
    """Stream a file into memory. Raises MediaFetchError on HTTP or size failure."""
    size_bytes = 0
    data = bytearray()
    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                if not chunk:
                    continue
                size_bytes += len(chunk)
                if max_bytes and size_bytes > max_bytes:
                    raise MediaFetchError(f"File exceeds {max_bytes} bytes")
                data.extend(chunk)
    except httpx.HTTPError as exc:
        raise MediaFetchError(f"Download failed: {exc}") from exc
    return bytes(data)

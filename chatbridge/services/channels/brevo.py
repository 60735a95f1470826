from typing import Optional

import httpx

from chatbridge.logging_config import get_logger
from chatbridge.models import ChatRef, Message, MessageSource, MessageType, ResponseMode
from chatbridge.models.timestamps import from_epoch_millis, utcnow
from chatbridge.schemas.brevo import (
    AgentMessageEvent,
    BrevoEvent,
    BrevoMessage,
    BrevoVisitor,
    EmptyEvent,
    VisitorMessageEvent,
    WebhookPayloadError,
)
from chatbridge.services.channels.base import (
    MediaPayload,
    MediaReference,
    NormalizedInbound,
    PlatformAdapter,
    download_bytes,
)

logger = get_logger("brevo_service")

# Brevo marks the duplicate agent it creates for Instagram conversations with this id fragment
DUMMY_AGENT_MARKER = "Dummy"


class BrevoService(PlatformAdapter):
    """Brevo conversations aggregator (WhatsApp, Instagram, website widget)."""

    name = "brevo"

    def __init__(
        self,
        api_key: str,
        agent_id: str,
        api_url: str = "https://api.brevo.com/v3",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.agent_id = agent_id
        self.api_url = api_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=30.0, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def normalize_inbound(self, raw: BrevoEvent) -> Optional[NormalizedInbound]:
        if isinstance(raw, EmptyEvent):
            return None

        if isinstance(raw, AgentMessageEvent):
            agent_id = raw.message.agentId or ""
            if DUMMY_AGENT_MARKER in agent_id:
                logger.info(f"Skipping Instagram duplicate message with ID: {raw.message.id}")
                return None
            if self.agent_id and agent_id == self.agent_id:
                # our own reply, persisted when it was sent
                logger.debug(f"Skipping echo of own agent message: {raw.message.id}")
                return None
            platform = "instagram" if raw.visitor.source == "widget" else raw.visitor.source
            return self._build(raw.visitor, raw.message, self._source(platform), is_incoming=False)

        if isinstance(raw, VisitorMessageEvent):
            return self._build(raw.visitor, raw.message, self._source(raw.visitor.source), is_incoming=True)

        raise WebhookPayloadError(f"Unsupported event variant: {type(raw).__name__}")

    @staticmethod
    def _source(platform: str) -> MessageSource:
        try:
            return MessageSource(platform)
        except ValueError:
            raise WebhookPayloadError(f"Unsupported visitor source: {platform}")

    def _build(
        self,
        visitor: BrevoVisitor,
        message: BrevoMessage,
        source: MessageSource,
        is_incoming: bool,
    ) -> NormalizedInbound:
        message_type = MessageType.TEXT
        media = None
        if message.file:
            if message.file.isImage:
                message_type = MessageType.IMAGE
                filename, content_type = f"brevo_{source.value}_{message.id}.jpg", "image/jpeg"
            else:
                message_type = MessageType.AUDIO
                filename, content_type = f"brevo_{source.value}_{message.id}.mp4", "audio/mp4"
            if message.file.link:
                media = MediaReference(message.file.link, filename, content_type)

        if is_incoming:
            sender_id, sender_name = visitor.id, visitor.displayedName
        else:
            sender_id, sender_name = message.agentId or "brevo_agent", message.agentName or "Agent"

        canonical = Message(
            source=source,
            platform_message_id=message.id,
            type=message_type,
            content=message.text or "",
            is_incoming=is_incoming,
            timestamp=from_epoch_millis(message.createdAt) if message.createdAt else utcnow(),
            sender_id=sender_id,
            sender_name=sender_name,
            response_mode=ResponseMode.MANUAL,
        )
        return NormalizedInbound(
            chat=ChatRef(visitor.threadId, source, visitor.displayedName),
            message=canonical,
            event_id=message.id,
            media=media,
            reply_handle=visitor.id,
        )

    async def fetch_media(self, reference: MediaReference) -> MediaPayload:
        data = await download_bytes(self._client, reference.locator)
        return MediaPayload(data=data, filename=reference.filename, content_type=reference.content_type)

    async def send_outbound(self, handle: str, text: str) -> Optional[str]:
        """Send an agent message to a Brevo visitor.

        Returns the Brevo message id, "" when Brevo accepted the message without one,
        or None when delivery failed.
        """
        payload = {"visitorId": handle, "text": text, "agentId": self.agent_id}
        try:
            response = await self._client.post(
                f"{self.api_url}/conversations/messages",
                headers={"api-key": self.api_key, "accept": "application/json"},
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error(f"Error sending Brevo message: {e}", extra={"context": {"visitor_id": handle}})
            return None

        if response.status_code >= 400:
            logger.error(
                f"Error sending Brevo message: {response.status_code}",
                extra={"context": {"visitor_id": handle, "body": response.text[:500]}},
            )
            return None

        message_id = response.json().get("id")
        return str(message_id) if message_id is not None else ""

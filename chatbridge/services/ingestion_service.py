"""Ingestion of one normalized platform event.

resolve chat -> persist media -> persist message -> (auto mode) reply ->
deliver reply -> persist reply. Steps run strictly in sequence; only the
message save is allowed to raise.
"""

import time
from dataclasses import dataclass
from typing import Optional

from chatbridge.logging_config import ContextLogger, get_logger
from chatbridge.models import Chat, Message, MessageType, ResponseMode
from chatbridge.models.timestamps import utcnow
from chatbridge.services.alert_service import alert_error
from chatbridge.services.channels.base import NormalizedInbound, PlatformAdapter
from chatbridge.services.responder_service import Responder
from chatbridge.services.storage_service import StoreGateway

logger = get_logger("ingestion_service")

ASSISTANT_SENDER_NAME = "OpenAI Assistant"


@dataclass
class IngestionOutcome:
    status: str  # skipped, saved, replied, reply_failed
    chat_id: Optional[str] = None
    message_id: Optional[str] = None
    media_file_id: Optional[str] = None
    reply_text: Optional[str] = None
    reply_message_id: Optional[str] = None


class IngestionService:
    def __init__(self, store: StoreGateway, responder: Responder, *, assistant_sender_id: str = ""):
        self.store = store
        self.responder = responder
        self.assistant_sender_id = assistant_sender_id or "OpenAI"

    async def ingest(self, adapter: PlatformAdapter, inbound: NormalizedInbound) -> IngestionOutcome:
        log = ContextLogger(
            logger,
            {
                "source": inbound.chat.source.value,
                "platform_chat_id": inbound.chat.platform_chat_id,
                "platform_message_id": inbound.message.platform_message_id,
            },
        )

        chat = await self.store.find_or_create_chat(
            inbound.chat.platform_chat_id,
            inbound.chat.source,
            inbound.chat.display_name,
        )
        if not chat or not chat.id:
            log.error("Failed to create or get chat, event skipped")
            return IngestionOutcome(status="skipped")

        log = log.bind(chat_id=chat.id)
        media_file_id = await self._persist_media(adapter, inbound, log)

        draft = inbound.message.model_copy(update={"chat_id": chat.id, "media_file_id": media_file_id})
        saved = await self.store.save_message(draft)
        log.info("Message saved", context={"message_id": saved.id, "type": saved.type.value})

        outcome = IngestionOutcome(status="saved", chat_id=chat.id, message_id=saved.id, media_file_id=media_file_id)
        if not inbound.is_incoming or not chat.auto_mode:
            return outcome

        log.info(f"Generating auto-reply for message: {saved.platform_message_id}")
        return await self._auto_reply(adapter, inbound, chat, saved, outcome, log)

    async def _persist_media(self, adapter: PlatformAdapter, inbound: NormalizedInbound, log: ContextLogger) -> Optional[str]:
        reference = inbound.media
        if reference is None:
            return None
        try:
            payload = await adapter.fetch_media(reference)
            return await self.store.save_media_file(
                payload.data,
                payload.filename,
                payload.content_type,
                inbound.message.source.value,
            )
        except Exception as e:
            # the message is still saved, without its attachment
            log.warning(f"Media not saved: {e}", context={"filename": reference.filename})
            return None

    async def _auto_reply(
        self,
        adapter: PlatformAdapter,
        inbound: NormalizedInbound,
        chat: Chat,
        saved: Message,
        outcome: IngestionOutcome,
        log: ContextLogger,
    ) -> IngestionOutcome:
        reply_text = await self.responder.respond(saved, chat)
        outcome.reply_text = reply_text

        external_id = await adapter.send_outbound(inbound.reply_handle, reply_text)
        if external_id is None:
            log.error("Auto reply delivery failed")
            await alert_error(
                "Auto reply delivery failed",
                {"source": inbound.chat.source.value, "chat_id": chat.id},
            )
            outcome.status = "reply_failed"
            return outcome

        reply = Message(
            source=adapter.outbound_source(inbound),
            platform_message_id=external_id or f"auto_{int(time.time() * 1000)}",
            chat_id=chat.id,
            type=MessageType.TEXT,
            content=reply_text,
            is_incoming=False,
            timestamp=utcnow(),
            sender_id=self.assistant_sender_id,
            sender_name=ASSISTANT_SENDER_NAME,
            response_mode=ResponseMode.AUTO,
        )
        saved_reply = await self.store.save_message(reply)
        log.info("Sent auto response", context={"reply_message_id": saved_reply.id})

        outcome.status = "replied"
        outcome.reply_message_id = saved_reply.id
        return outcome

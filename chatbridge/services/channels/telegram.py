import asyncio
from typing import Awaitable, Callable, Optional, Union

import httpx
from pydantic import ValidationError

from chatbridge.logging_config import get_logger
from chatbridge.models import ChatRef, Message, MessageSource, MessageType, ResponseMode
from chatbridge.schemas.telegram import TelegramFile, TelegramMessage, TelegramUpdate
from chatbridge.services.channels.base import (
    MediaFetchError,
    MediaPayload,
    MediaReference,
    NormalizedInbound,
    PlatformAdapter,
    download_bytes,
)

logger = get_logger("telegram_service")

VOICE_PLACEHOLDER = "Voice message"


class TelegramAPIError(Exception):
    pass


class TelegramService(PlatformAdapter):
    """Direct Telegram bot channel."""

    name = "telegram"
    BASE_URL = "https://api.telegram.org/bot{token}"
    FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"

    def __init__(self, bot_token: str, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self._client = httpx.AsyncClient(timeout=30.0, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _make_request(self, method: str, data: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
        """Make request to Telegram API."""
        url = f"{self.base_url}/{method}"
        try:
            kwargs = {"json": data or {}}
            if timeout is not None:
                kwargs["timeout"] = timeout
            response = await self._client.post(url, **kwargs)
            return response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}", extra={"context": {"method": method}})
            return {"ok": False, "error": str(e)}

    # === INBOUND ===

    def normalize_inbound(self, raw: Union[dict, TelegramUpdate]) -> Optional[NormalizedInbound]:
        try:
            update = raw if isinstance(raw, TelegramUpdate) else TelegramUpdate.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Invalid Telegram update: {e.error_count()} validation errors")
            return None

        tg_message = update.message
        if tg_message is None:
            return None
        if tg_message.from_user and tg_message.from_user.is_bot:
            return None

        kind = self._detect_kind(tg_message)
        if kind is None:
            logger.debug("Unsupported Telegram message kind", extra={"context": {"update_id": update.update_id}})
            return None
        message_type, content, media = kind

        sender = tg_message.from_user
        platform_chat_id = str(tg_message.chat.id)
        message = Message(
            source=MessageSource.TELEGRAM,
            platform_message_id=str(tg_message.message_id),
            type=message_type,
            content=content,
            is_incoming=True,
            timestamp=tg_message.date,
            sender_id=str(sender.id) if sender else platform_chat_id,
            sender_name=(sender.first_name if sender else None) or "Unknown",
            response_mode=ResponseMode.MANUAL,
        )
        return NormalizedInbound(
            chat=ChatRef(platform_chat_id, MessageSource.TELEGRAM, self._chat_display_name(tg_message)),
            message=message,
            event_id=f"tg:{update.update_id}",
            media=media,
            reply_handle=platform_chat_id,
        )

    @staticmethod
    def _detect_kind(tg_message: TelegramMessage) -> Optional[tuple[MessageType, str, Optional[MediaReference]]]:
        caption = tg_message.caption or ""

        if tg_message.photo:
            best_photo = tg_message.photo[-1]
            return (
                MessageType.IMAGE,
                caption,
                MediaReference(best_photo.file_id, f"tg_photo_{best_photo.file_unique_id}.jpg", "image/jpeg"),
            )
        if tg_message.voice:
            voice = tg_message.voice
            return (
                MessageType.AUDIO,
                caption or VOICE_PLACEHOLDER,
                MediaReference(voice.file_id, f"tg_voice_{voice.file_unique_id}.ogg", "audio/ogg"),
            )
        if tg_message.audio:
            audio = tg_message.audio
            filename = audio.file_name or f"tg_audio_{audio.file_unique_id}.mp3"
            return (
                MessageType.AUDIO,
                caption,
                MediaReference(audio.file_id, filename, audio.mime_type or "audio/mpeg"),
            )
        if tg_message.text:
            return MessageType.TEXT, tg_message.text, None
        return None

    @staticmethod
    def _chat_display_name(tg_message: TelegramMessage) -> str:
        if tg_message.chat.title:
            return tg_message.chat.title
        sender = tg_message.from_user
        if sender and sender.full_name:
            return sender.full_name
        if sender and sender.username:
            return sender.username
        return tg_message.chat.username or "Unknown"

    async def fetch_media(self, reference: MediaReference) -> MediaPayload:
        result = await self._make_request("getFile", {"file_id": reference.locator})
        if not result.get("ok"):
            raise MediaFetchError(f"getFile failed: {result.get('description') or result.get('error')}")

        tg_file = TelegramFile.model_validate(result["result"])
        if not tg_file.file_path:
            raise MediaFetchError(f"Telegram file {reference.locator} has no path")

        url = self.FILE_URL.format(token=self.bot_token, path=tg_file.file_path)
        data = await download_bytes(self._client, url)
        return MediaPayload(data=data, filename=reference.filename, content_type=reference.content_type)

    # === OUTBOUND ===

    async def send_outbound(self, handle: str, text: str) -> Optional[str]:
        result = await self._make_request("sendMessage", {"chat_id": handle, "text": text})
        if not result.get("ok"):
            logger.error(
                "Error sending Telegram message",
                extra={"context": {"chat_id": handle, "error": result.get("description") or result.get("error")}},
            )
            return None
        return str(result["result"]["message_id"])

    # === POLLING ===

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> list[dict]:
        data = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            data["offset"] = offset
        result = await self._make_request("getUpdates", data, timeout=timeout + 10)
        if not result.get("ok"):
            raise TelegramAPIError(f"getUpdates failed: {result.get('description') or result.get('error')}")
        return result.get("result", [])

    async def delete_webhook(self) -> bool:
        result = await self._make_request("deleteWebhook", {"drop_pending_updates": False})
        return bool(result.get("ok"))

    async def run_polling(
        self,
        handler: Callable[[dict], Awaitable[None]],
        timeout: int = 30,
        retry_delay: float = 5.0,
    ) -> None:
        """Long-poll getUpdates and pass every update to `handler` until cancelled."""
        await self.delete_webhook()
        logger.info("Telegram polling started")
        offset = None
        while True:
            try:
                updates = await self.get_updates(offset, timeout)
            except TelegramAPIError as e:
                logger.warning(f"Telegram polling error: {e}")
                await asyncio.sleep(retry_delay)
                continue

            for update in updates:
                offset = update["update_id"] + 1
                try:
                    await handler(update)
                except Exception as e:
                    logger.error(
                        f"Error handling Telegram update: {e}",
                        extra={"context": {"update_id": update.get("update_id")}},
                        exc_info=True,
                    )

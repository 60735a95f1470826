"""Generate automatic replies with the external assistant.

`Responder.respond` never raises: every failure ends in one of the fixed
user-facing texts below. The inbound message is already persisted by the time
it is called.
"""

import asyncio
import base64
import time
from typing import Awaitable, Callable, Optional

from chatbridge.logging_config import get_logger
from chatbridge.models import Chat, Message, MessageSource, MessageType
from chatbridge.services.assistant import (
    AssistantAPIError,
    AssistantProvider,
    RunFailedError,
    RunTimeoutError,
    poll_run,
)
from chatbridge.services.audio_service import AudioConverter
from chatbridge.services.storage_service import StoreGateway

logger = get_logger("responder_service")

FALLBACK_REPLY = "Извините, произошла ошибка при обработке запроса."

IMAGE_NOT_FOUND = "Изображение не найдено."
IMAGE_ACCESS_ERROR = "Ошибка доступа к файлу."
IMAGE_NOT_ANALYZED = "Не удалось проанализировать изображение."
IMAGE_DEFAULT_PROMPT = "Что на этом изображении?"
IMAGE_STORAGE_ERROR = "Не удалось получить изображение из хранилища."

AUDIO_NOT_FOUND = "Аудиофайл не найден."
AUDIO_ACCESS_ERROR = "Ошибка доступа к аудиофайлу."
AUDIO_TRANSCRIPTION_FAILED = "Не удалось распознать аудио."
AUDIO_EMPTY_TRANSCRIPT = "Не удалось распознать текст в аудиосообщении."
AUDIO_PROCESSING_ERROR = "Произошла ошибка при обработке аудиосообщения."

OGG_CONTENT_TYPES = {"audio/ogg", "audio/opus", "application/ogg", "audio/x-opus+ogg"}
AUDIO_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "mp4",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/webm": "webm",
    "audio/flac": "flac",
}


class ResponderError(Exception):
    pass


def image_context(caption: str, description: str) -> str:
    note = f"[Содержание изображения: {description}]"
    return f"{caption}\n\n{note}" if caption else note


def image_reply(description: str, answer: str) -> str:
    return f'📷 Описание изображения: "{description}"\n\n🤖 Ответ: {answer}'


def audio_reply(transcript: str, answer: str) -> str:
    return f'📝 Распознанный текст: "{transcript}"\n\n🤖 Ответ: {answer}'


def _base_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def needs_reencoding(source: MessageSource, content_type: Optional[str]) -> bool:
    """Telegram voice notes arrive as ogg/opus, which the transcription API rejects."""
    if source != MessageSource.TELEGRAM:
        return False
    base = _base_type(content_type)
    # the store may omit the type for voice notes it cannot sniff
    return not base or base in OGG_CONTENT_TYPES


def upload_name(content_type: Optional[str]) -> tuple[str, str]:
    base = _base_type(content_type)
    extension = AUDIO_EXTENSIONS.get(base)
    if extension is None:
        return "audio.mp4", "audio/mp4"
    return f"audio.{extension}", base


class Responder:
    def __init__(
        self,
        store: StoreGateway,
        provider: AssistantProvider,
        audio_converter: AudioConverter,
        *,
        assistant_id: str,
        poll_interval: float = 1.0,
        run_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.provider = provider
        self.audio_converter = audio_converter
        self.assistant_id = assistant_id
        self.poll_interval = poll_interval
        self.run_timeout = run_timeout
        self._clock = clock
        self._sleep = sleep

    async def respond(self, message: Message, chat: Chat) -> str:
        context = {"chat_id": chat.id, "platform_message_id": message.platform_message_id, "type": message.type.value}
        try:
            if message.type in (MessageType.VOICE, MessageType.AUDIO):
                logger.info("Processing audio message", extra={"context": context})
                return await self._handle_audio(message, chat)
            if message.type == MessageType.IMAGE:
                logger.info("Processing image message", extra={"context": context})
                return await self._handle_image(message, chat)
            return await self._handle_text(message.content, chat)
        except RunTimeoutError as e:
            logger.warning(f"Assistant reply timed out: {e}", extra={"context": context})
        except RunFailedError as e:
            logger.error(f"Assistant run failed: {e}", extra={"context": {**context, "status": e.status}})
        except Exception as e:
            logger.error(f"Assistant reply failed: {e}", extra={"context": context}, exc_info=True)
        return FALLBACK_REPLY

    # === TEXT ===

    async def _ensure_thread(self, chat: Chat) -> str:
        if chat.openai_thread_id:
            return chat.openai_thread_id

        thread_id = await self.provider.create_thread()
        # re-read so a concurrent auto mode toggle is not overwritten
        current = await self.store.get_chat_by_id(chat.id) if chat.id else None
        target = current or chat
        target.openai_thread_id = thread_id
        await self.store.save_chat(target)
        chat.openai_thread_id = thread_id
        logger.info(f"Created new thread {thread_id} for chat {chat.id}")
        return thread_id

    async def _handle_text(self, content: str, chat: Chat) -> str:
        if not self.assistant_id:
            raise ResponderError("OPENAI_ASSISTANT_ID is not configured")

        thread_id = await self._ensure_thread(chat)
        await self.provider.add_message(thread_id, content)
        run = await self.provider.create_run(thread_id, self.assistant_id)

        async def fetch_status() -> str:
            return (await self.provider.retrieve_run(thread_id, run.id)).status

        await poll_run(
            fetch_status,
            run_id=run.id,
            interval=self.poll_interval,
            timeout=self.run_timeout,
            clock=self._clock,
            sleep=self._sleep,
        )

        latest = await self.provider.latest_message(thread_id)
        if latest is None or latest.role != "assistant":
            raise ResponderError("No assistant response found")
        if latest.content_type != "text":
            raise ResponderError(f"Unexpected content type: {latest.content_type}")
        return latest.text

    # === IMAGE ===

    async def _handle_image(self, message: Message, chat: Chat) -> str:
        if not message.media_file_id:
            return IMAGE_NOT_FOUND

        try:
            download = await self.store.download_media(message.media_file_id)
            if not download.ok:
                return IMAGE_ACCESS_ERROR

            content_type = download.content_type or "image/jpeg"
            data_url = f"data:{content_type};base64,{base64.b64encode(download.content).decode('ascii')}"
            description = await self.provider.describe_image(data_url, message.content or IMAGE_DEFAULT_PROMPT)
            description = description or IMAGE_NOT_ANALYZED

            answer = await self._handle_text(image_context(message.content, description), chat)
            return image_reply(description, answer)
        except Exception as e:
            logger.error(
                f"Error getting image from store: {e}",
                extra={"context": {"media_file_id": message.media_file_id}},
                exc_info=True,
            )
            return IMAGE_STORAGE_ERROR

    # === AUDIO ===

    async def _handle_audio(self, message: Message, chat: Chat) -> str:
        if not message.media_file_id:
            return AUDIO_NOT_FOUND

        try:
            download = await self.store.download_media(message.media_file_id)
            if not download.ok:
                return AUDIO_ACCESS_ERROR

            if needs_reencoding(message.source, download.content_type):
                audio = await self.audio_converter.to_speech_mp3(download.content)
                filename, mime_type = "audio.mp3", "audio/mpeg"
            else:
                audio = download.content
                filename, mime_type = upload_name(download.content_type)

            try:
                transcript = await self.provider.transcribe_audio(audio, filename, mime_type)
            except AssistantAPIError as e:
                logger.error(f"Transcription error: {e.body[:500]}", extra={"context": {"status": e.status_code}})
                return AUDIO_TRANSCRIPTION_FAILED

            if not transcript or not transcript.strip():
                return AUDIO_EMPTY_TRANSCRIPT

            answer = await self._handle_text(transcript, chat)
            return audio_reply(transcript, answer)
        except Exception as e:
            logger.error(
                f"Error processing audio from store: {e}",
                extra={"context": {"media_file_id": message.media_file_id}},
                exc_info=True,
            )
            return AUDIO_PROCESSING_ERROR

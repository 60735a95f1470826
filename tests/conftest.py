import itertools
from typing import Optional
from unittest.mock import AsyncMock, Mock

import pytest

from chatbridge.config import Settings
from chatbridge.dependencies import ServiceContainer
from chatbridge.models import Chat, Message, MessageSource
from chatbridge.services.assistant import AssistantMessage, AssistantProvider, RunStatus
from chatbridge.services.channels import MediaFetchError, MediaPayload, PlatformAdapter
from chatbridge.services.dedup_service import DedupCache
from chatbridge.services.ingestion_service import IngestionService
from chatbridge.services.responder_service import Responder
from chatbridge.services.storage_service import MediaDownload, RecordPage, StoreNotFoundError


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    """In-memory stand-in for StoreGateway."""

    def __init__(self):
        self.chats: dict[str, Chat] = {}
        self.messages: list[Message] = []
        self.media: dict[str, tuple[bytes, str, str, str]] = {}
        self.downloads: dict[str, MediaDownload] = {}
        self.saved_chats: list[Chat] = []
        self.is_connected = True
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    async def find_chat(self, platform_chat_id: str) -> Optional[Chat]:
        for chat in self.chats.values():
            if chat.platform_chat_id == platform_chat_id:
                return chat.model_copy()
        return None

    async def find_or_create_chat(self, platform_chat_id, source, display_name=None) -> Optional[Chat]:
        chat = await self.find_chat(platform_chat_id)
        if chat:
            return chat
        return await self.save_chat(Chat(platform_chat_id=platform_chat_id, source=source, name=display_name or "Unknown"))

    async def save_chat(self, chat: Chat) -> Chat:
        stored = chat.model_copy()
        if not stored.id:
            stored.id = self._next_id("chat")
        self.chats[stored.id] = stored
        self.saved_chats.append(stored.model_copy())
        return stored.model_copy()

    async def get_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        chat = self.chats.get(chat_id)
        return chat.model_copy() if chat else None

    async def update_auto_mode(self, chat_id: str, auto_mode: bool) -> Chat:
        self.chats[chat_id].auto_mode = auto_mode
        return self.chats[chat_id].model_copy()

    async def get_chats(self, source=None, limit=50) -> RecordPage:
        items = [c.model_copy() for c in self.chats.values() if not source or c.source.value == source]
        return RecordPage(total=len(items), items=items[:limit])

    async def save_message(self, message: Message) -> Message:
        stored = message.model_copy(update={"id": self._next_id("msg")})
        self.messages.append(stored)
        return stored.model_copy()

    async def get_messages(self, chat_id: str, limit: int = 100) -> RecordPage:
        items = [m for m in self.messages if m.chat_id == chat_id]
        return RecordPage(total=len(items), items=items[:limit])

    async def save_media_file(self, data: bytes, filename: str, content_type: str, platform: str) -> str:
        media_id = self._next_id("media")
        self.media[media_id] = (data, filename, content_type, platform)
        self.downloads.setdefault(media_id, MediaDownload(200, data, content_type))
        return media_id

    async def download_media(self, media_id: str) -> MediaDownload:
        if media_id not in self.downloads:
            raise StoreNotFoundError(f"Media {media_id} has no stored file", 404)
        return self.downloads[media_id]

    async def aclose(self) -> None:
        pass


class FakeAssistant(AssistantProvider):
    def __init__(self, reply="Ответ ассистента", statuses=("completed",), transcript="", description="Кот на диване"):
        self.reply = reply
        self.statuses = list(statuses)
        self.transcript = transcript
        self.description = description
        self.threads_created = 0
        self.added_messages: list[tuple[str, str]] = []
        self.transcribed: list[tuple[bytes, str, str]] = []
        self.described: list[tuple[str, str]] = []

    async def create_thread(self) -> str:
        self.threads_created += 1
        return f"thread_{self.threads_created}"

    async def add_message(self, thread_id: str, content: str) -> None:
        self.added_messages.append((thread_id, content))

    async def create_run(self, thread_id: str, assistant_id: str) -> RunStatus:
        return RunStatus(id="run_1", status="queued")

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunStatus:
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return RunStatus(id=run_id, status=status)

    async def latest_message(self, thread_id: str) -> Optional[AssistantMessage]:
        return AssistantMessage(role="assistant", content_type="text", text=self.reply)

    async def describe_image(self, data_url: str, prompt: str) -> str:
        self.described.append((data_url, prompt))
        return self.description

    async def transcribe_audio(self, audio_bytes: bytes, filename: str, mime_type: str) -> str:
        self.transcribed.append((audio_bytes, filename, mime_type))
        return self.transcript


class FakeAdapter(PlatformAdapter):
    name = "fake"

    def __init__(self, media: Optional[MediaPayload] = None, send_result: Optional[str] = "ext_1"):
        self.media = media
        self.send_result = send_result
        self.sent: list[tuple[str, str]] = []

    def normalize_inbound(self, raw):
        return raw

    async def fetch_media(self, reference):
        if self.media is None:
            raise MediaFetchError("Download failed: 404")
        return self.media

    async def send_outbound(self, handle: str, text: str) -> Optional[str]:
        self.sent.append((handle, text))
        return self.send_result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def assistant():
    return FakeAssistant()


@pytest.fixture
def audio_converter():
    converter = Mock()
    converter.to_speech_mp3 = AsyncMock(return_value=b"mp3-bytes")
    return converter


@pytest.fixture
def responder(store, assistant, audio_converter, clock):
    return Responder(
        store,
        assistant,
        audio_converter,
        assistant_id="asst_test",
        poll_interval=1.0,
        run_timeout=30.0,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        api_key="test-api-key",
        brevo_webhook_secret="brevo-secret",
        telegram_webhook_secret="tg-secret",
        brevo_agent_id="agent_self",
        openai_assistant_id="asst_test",
    )


@pytest.fixture
def container(test_settings, store, responder):
    telegram = Mock()
    telegram.send_outbound = AsyncMock(return_value="501")
    brevo = Mock()
    brevo.send_outbound = AsyncMock(return_value="brevo_msg_1")
    ingestion = IngestionService(store, responder, assistant_sender_id="asst_test")
    return ServiceContainer(
        settings=test_settings,
        store=store,
        dedup=DedupCache(),
        telegram=telegram,
        brevo=brevo,
        assistant=Mock(),
        responder=responder,
        ingestion=ingestion,
    )


@pytest.fixture
def telegram_chat(store):
    chat = Chat(id="chat_tg", platform_chat_id="555", source=MessageSource.TELEGRAM, name="Ivan")
    store.chats[chat.id] = chat
    return chat


@pytest.fixture
def make_adapter():
    return FakeAdapter

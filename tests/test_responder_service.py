import asyncio
from datetime import datetime, timezone

import pytest

from chatbridge.models import Chat, Message, MessageSource, MessageType
from chatbridge.services.assistant import AssistantAPIError, AssistantMessage, RunFailedError, RunTimeoutError, poll_run
from chatbridge.services.audio_service import AudioConversionError
from chatbridge.services.responder_service import (
    AUDIO_ACCESS_ERROR,
    AUDIO_EMPTY_TRANSCRIPT,
    AUDIO_NOT_FOUND,
    AUDIO_PROCESSING_ERROR,
    AUDIO_TRANSCRIPTION_FAILED,
    FALLBACK_REPLY,
    IMAGE_ACCESS_ERROR,
    IMAGE_DEFAULT_PROMPT,
    IMAGE_NOT_FOUND,
    IMAGE_STORAGE_ERROR,
    Responder,
)
from chatbridge.services.storage_service import MediaDownload


def make_message(chat: Chat, **overrides) -> Message:
    data = dict(
        platform_message_id="100",
        source=chat.source,
        chat_id=chat.id,
        type=MessageType.TEXT,
        content="Привет",
        is_incoming=True,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        sender_id="777",
        sender_name="Иван",
    )
    data.update(overrides)
    return Message(**data)


class TestPollRun:
    def test_returns_when_completed(self, clock):
        statuses = iter(["queued", "in_progress", "completed"])

        async def fetch():
            return next(statuses)

        assert asyncio.run(poll_run(fetch, clock=clock, sleep=clock.sleep)) == "completed"
        assert clock.now == 2.0

    @pytest.mark.parametrize("status", ["failed", "cancelled", "expired"])
    def test_terminal_failure_raises_immediately(self, clock, status):
        async def fetch():
            return status

        with pytest.raises(RunFailedError) as exc_info:
            asyncio.run(poll_run(fetch, run_id="run_1", clock=clock, sleep=clock.sleep))

        assert exc_info.value.status == status
        assert clock.now == 0.0

    def test_timeout_after_deadline(self, clock):
        calls = []

        async def fetch():
            calls.append(clock.now)
            return "in_progress"

        with pytest.raises(RunTimeoutError):
            asyncio.run(poll_run(fetch, interval=1.0, timeout=30.0, clock=clock, sleep=clock.sleep))

        assert 30.0 < clock.now <= 32.0
        assert len(calls) == 32


class TestTextPath:
    def test_creates_thread_and_persists_it(self, responder, store, assistant, telegram_chat):
        reply = asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat))

        assert reply == "Ответ ассистента"
        assert assistant.threads_created == 1
        assert store.chats["chat_tg"].openai_thread_id == "thread_1"
        assert assistant.added_messages == [("thread_1", "Привет")]

    def test_reuses_existing_thread(self, responder, store, assistant, telegram_chat):
        telegram_chat.openai_thread_id = "thread_existing"

        asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat))

        assert assistant.threads_created == 0
        assert assistant.added_messages[0][0] == "thread_existing"
        assert store.saved_chats == []

    def test_thread_save_keeps_auto_mode_from_store(self, responder, store, telegram_chat):
        store.chats["chat_tg"].auto_mode = True
        stale = telegram_chat.model_copy(update={"auto_mode": False})

        asyncio.run(responder.respond(make_message(stale), stale))

        assert store.chats["chat_tg"].auto_mode is True
        assert store.chats["chat_tg"].openai_thread_id == "thread_1"

    def test_run_stuck_in_progress_yields_fallback(self, responder, assistant, telegram_chat, clock):
        assistant.statuses = ["in_progress"]

        reply = asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat))

        assert reply == FALLBACK_REPLY
        assert clock.now > 30.0

    def test_failed_run_yields_fallback(self, responder, assistant, telegram_chat):
        assistant.statuses = ["queued", "failed"]

        assert asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat)) == FALLBACK_REPLY

    def test_non_assistant_latest_message_yields_fallback(self, responder, assistant, telegram_chat):
        async def latest(thread_id):
            return AssistantMessage(role="user", content_type="text", text="echo")

        assistant.latest_message = latest

        assert asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat)) == FALLBACK_REPLY

    def test_non_text_content_yields_fallback(self, responder, assistant, telegram_chat):
        async def latest(thread_id):
            return AssistantMessage(role="assistant", content_type="image_file")

        assistant.latest_message = latest

        assert asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat)) == FALLBACK_REPLY

    def test_missing_assistant_id_yields_fallback(self, store, assistant, audio_converter, clock, telegram_chat):
        responder = Responder(store, assistant, audio_converter, assistant_id="", clock=clock, sleep=clock.sleep)

        assert asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat)) == FALLBACK_REPLY
        assert assistant.threads_created == 0

    def test_api_error_yields_fallback(self, responder, assistant, telegram_chat):
        async def broken(thread_id, content):
            raise AssistantAPIError("OpenAI API error: 500", status_code=500)

        assistant.add_message = broken

        assert asyncio.run(responder.respond(make_message(telegram_chat), telegram_chat)) == FALLBACK_REPLY


class TestImagePath:
    def test_missing_media_reference(self, responder, assistant, telegram_chat):
        message = make_message(telegram_chat, type=MessageType.IMAGE, media_file_id=None)

        assert asyncio.run(responder.respond(message, telegram_chat)) == IMAGE_NOT_FOUND
        assert assistant.described == []

    def test_download_not_ok(self, responder, store, telegram_chat):
        store.downloads["media1"] = MediaDownload(403, b"", None)
        message = make_message(telegram_chat, type=MessageType.IMAGE, media_file_id="media1")

        assert asyncio.run(responder.respond(message, telegram_chat)) == IMAGE_ACCESS_ERROR

    def test_description_and_answer_composed(self, responder, store, assistant, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"\x89PNG", "image/png")
        message = make_message(telegram_chat, type=MessageType.IMAGE, media_file_id="media1", content="")

        reply = asyncio.run(responder.respond(message, telegram_chat))

        assert reply == '📷 Описание изображения: "Кот на диване"\n\n🤖 Ответ: Ответ ассистента'
        data_url, prompt = assistant.described[0]
        assert data_url == "data:image/png;base64,iVBORw=="
        assert prompt == IMAGE_DEFAULT_PROMPT
        assert assistant.added_messages == [("thread_1", "[Содержание изображения: Кот на диване]")]

    def test_caption_used_as_prompt_and_context(self, responder, store, assistant, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"img", None)
        message = make_message(telegram_chat, type=MessageType.IMAGE, media_file_id="media1", content="Что это?")

        asyncio.run(responder.respond(message, telegram_chat))

        assert assistant.described[0][0].startswith("data:image/jpeg;base64,")
        assert assistant.described[0][1] == "Что это?"
        assert assistant.added_messages[0][1] == "Что это?\n\n[Содержание изображения: Кот на диване]"

    def test_missing_stored_media_is_storage_error(self, responder, telegram_chat):
        message = make_message(telegram_chat, type=MessageType.IMAGE, media_file_id="unknown")

        assert asyncio.run(responder.respond(message, telegram_chat)) == IMAGE_STORAGE_ERROR


class TestAudioPath:
    def _voice(self, chat, **overrides):
        return make_message(chat, type=MessageType.AUDIO, media_file_id="media1", content="Voice message", **overrides)

    def test_missing_media_reference(self, responder, telegram_chat):
        message = make_message(telegram_chat, type=MessageType.VOICE, media_file_id=None)

        assert asyncio.run(responder.respond(message, telegram_chat)) == AUDIO_NOT_FOUND

    def test_download_not_ok(self, responder, store, telegram_chat):
        store.downloads["media1"] = MediaDownload(404, b"", None)

        assert asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat)) == AUDIO_ACCESS_ERROR

    def test_empty_transcript_skips_text_path(self, responder, store, assistant, audio_converter, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"ogg", "audio/ogg")
        assistant.transcript = ""

        reply = asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat))

        assert reply == AUDIO_EMPTY_TRANSCRIPT
        assert reply == "Не удалось распознать текст в аудиосообщении."
        assert assistant.added_messages == []
        assert assistant.threads_created == 0

    def test_telegram_audio_converted_to_mp3(self, responder, store, assistant, audio_converter, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"ogg", "audio/ogg")
        assistant.transcript = "Добрый день"

        reply = asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat))

        audio_converter.to_speech_mp3.assert_awaited_once_with(b"ogg")
        assert assistant.transcribed == [(b"mp3-bytes", "audio.mp3", "audio/mpeg")]
        assert reply == '📝 Распознанный текст: "Добрый день"\n\n🤖 Ответ: Ответ ассистента'
        assert assistant.added_messages == [("thread_1", "Добрый день")]

    def test_telegram_mp3_file_uploaded_as_is(self, responder, store, assistant, audio_converter, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"mp3", "audio/mpeg")
        assistant.transcript = "Добрый день"

        reply = asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat))

        audio_converter.to_speech_mp3.assert_not_awaited()
        assert assistant.transcribed == [(b"mp3", "audio.mp3", "audio/mpeg")]
        assert reply == '📝 Распознанный текст: "Добрый день"\n\n🤖 Ответ: Ответ ассистента'

    def test_telegram_m4a_keeps_its_format(self, responder, store, assistant, audio_converter, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"m4a", "audio/x-m4a")

        asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat))

        audio_converter.to_speech_mp3.assert_not_awaited()
        assert assistant.transcribed == [(b"m4a", "audio.m4a", "audio/x-m4a")]

    def test_telegram_voice_without_content_type_converted(self, responder, store, assistant, audio_converter, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"ogg", None)

        asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat))

        audio_converter.to_speech_mp3.assert_awaited_once_with(b"ogg")
        assert assistant.transcribed == [(b"mp3-bytes", "audio.mp3", "audio/mpeg")]

    def test_telegram_opus_with_codec_parameter_converted(self, responder, store, audio_converter, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"ogg", "audio/ogg; codecs=opus")

        asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat))

        audio_converter.to_speech_mp3.assert_awaited_once_with(b"ogg")

    def test_aggregator_audio_uploaded_as_is(self, responder, store, assistant, audio_converter):
        chat = Chat(id="chat_wa", platform_chat_id="t1", source=MessageSource.WHATSAPP)
        store.chats[chat.id] = chat
        store.downloads["media1"] = MediaDownload(200, b"mp4", "audio/mp4")
        assistant.transcript = "Hola"

        asyncio.run(responder.respond(self._voice(chat), chat))

        audio_converter.to_speech_mp3.assert_not_awaited()
        assert assistant.transcribed == [(b"mp4", "audio.mp4", "audio/mp4")]

    def test_transcription_api_failure(self, responder, store, assistant, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"ogg", "audio/ogg")

        async def broken(audio_bytes, filename, mime_type):
            raise AssistantAPIError("OpenAI API error: 400", status_code=400, body="bad audio")

        assistant.transcribe_audio = broken

        assert asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat)) == AUDIO_TRANSCRIPTION_FAILED

    def test_conversion_failure(self, responder, store, audio_converter, telegram_chat):
        store.downloads["media1"] = MediaDownload(200, b"ogg", "audio/ogg")
        audio_converter.to_speech_mp3.side_effect = AudioConversionError("ffmpeg exited with 1")

        assert asyncio.run(responder.respond(self._voice(telegram_chat), telegram_chat)) == AUDIO_PROCESSING_ERROR

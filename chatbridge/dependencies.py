"""Process-scoped services and FastAPI dependencies."""

import hmac
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from chatbridge.config import Settings
from chatbridge.logging_config import get_logger
from chatbridge.models import AGGREGATOR_SOURCES, MessageSource
from chatbridge.services.assistant import AssistantProvider, OpenAIAssistantProvider
from chatbridge.services.audio_service import AudioConverter
from chatbridge.services.channels import BrevoService, PlatformAdapter, TelegramService
from chatbridge.services.dedup_service import DedupCache, RedisDedupCache, build_dedup_cache
from chatbridge.services.ingestion_service import IngestionService
from chatbridge.services.responder_service import Responder
from chatbridge.services.storage_service import StoreGateway

logger = get_logger("dependencies")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class ServiceContainer:
    settings: Settings
    store: StoreGateway
    dedup: Union[DedupCache, RedisDedupCache]
    telegram: TelegramService
    brevo: BrevoService
    assistant: AssistantProvider
    responder: Responder
    ingestion: IngestionService

    def adapter_for(self, source: str) -> Optional[PlatformAdapter]:
        """Adapter that delivers outbound messages for a source tag, or None if the tag is unknown."""
        if source == MessageSource.TELEGRAM.value:
            return self.telegram
        if source == "brevo" or source in {s.value for s in AGGREGATOR_SOURCES}:
            return self.brevo
        return None

    async def aclose(self) -> None:
        for service in (self.telegram, self.brevo, self.assistant, self.dedup, self.store):
            try:
                await service.aclose()
            except Exception as e:
                logger.warning(f"Error closing {type(service).__name__}: {e}")


def build_container(config: Settings) -> ServiceContainer:
    store = StoreGateway(
        config.pocketbase_url,
        config.pocketbase_email,
        config.pocketbase_password,
        timeout_seconds=config.store_timeout_seconds,
    )
    assistant = OpenAIAssistantProvider(
        config.openai_api_key,
        vision_model=config.openai_vision_model,
        audio_model=config.openai_audio_model,
        base_url=config.openai_api_url,
    )
    responder = Responder(
        store,
        assistant,
        AudioConverter(config.ffmpeg_path),
        assistant_id=config.openai_assistant_id,
        poll_interval=config.assistant_poll_interval_seconds,
        run_timeout=config.assistant_run_timeout_seconds,
    )
    return ServiceContainer(
        settings=config,
        store=store,
        dedup=build_dedup_cache(config),
        telegram=TelegramService(config.telegram_token),
        brevo=BrevoService(config.brevo_api_key, config.brevo_agent_id, config.brevo_api_url),
        assistant=assistant,
        responder=responder,
        ingestion=IngestionService(store, responder, assistant_sender_id=config.openai_assistant_id),
    )


_container: Optional[ServiceContainer] = None


def set_container(container: Optional[ServiceContainer]) -> None:
    global _container
    _container = container


def get_container() -> ServiceContainer:
    if _container is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return _container


def secret_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_api_key(
    api_key: Optional[str] = Security(api_key_header),
    container: ServiceContainer = Depends(get_container),
) -> str:
    if not secret_matches(api_key, container.settings.api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Invalid API key")
    return api_key


def current_container() -> Optional[ServiceContainer]:
    return _container

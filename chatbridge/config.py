from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # record store
    pocketbase_url: str = "http://localhost:8090"
    pocketbase_email: str = ""
    pocketbase_password: str = ""
    store_timeout_seconds: float = 5.0

    # telegram bot channel
    telegram_token: str = ""
    telegram_webhook_secret: str = ""
    telegram_polling_enabled: bool = False
    telegram_polling_timeout_seconds: int = 30

    # brevo conversations
    brevo_api_key: str = ""
    brevo_agent_id: str = ""
    brevo_webhook_secret: str = ""
    brevo_api_url: str = "https://api.brevo.com/v3"

    # openai assistant
    openai_api_key: str = ""
    openai_assistant_id: str = ""
    openai_vision_model: str = "gpt-4o-mini"
    openai_audio_model: str = "whisper-1"
    openai_api_url: str = "https://api.openai.com/v1"
    assistant_poll_interval_seconds: float = 1.0
    assistant_run_timeout_seconds: float = 30.0

    # http api
    api_key: str = ""
    cors_origin_remote: Optional[str] = None
    stream_ping_interval_seconds: float = 30.0

    # dedup
    dedup_ttl_seconds: int = 3600
    dedup_sweep_interval_seconds: int = 600
    dedup_redis_url: Optional[str] = None

    # misc
    ffmpeg_path: str = "ffmpeg"
    log_level: str = "INFO"
    log_format: str = "json"
    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatbridge.models.enums import MessageSource
from chatbridge.models.timestamps import ensure_utc, parse_store_datetime


class Chat(BaseModel):
    """A conversation on one platform, as stored in the `chats` collection."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    platform_chat_id: Optional[str] = Field(default=None, alias="platformChatId")
    source: MessageSource
    name: str = "Unknown"
    updated: Optional[datetime] = None
    auto_mode: bool = Field(default=False, alias="autoMode")
    openai_thread_id: str = Field(default="", alias="openAIThreadId")

    @field_validator("updated", mode="before")
    @classmethod
    def _parse_updated(cls, value: Any) -> Any:
        return parse_store_datetime(value)

    @field_validator("updated")
    @classmethod
    def _updated_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value else value

    @field_validator("openai_thread_id", "name", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value if value is not None else ""

    def to_record(self) -> dict:
        # `updated` is maintained by the store itself
        return self.model_dump(by_alias=True, exclude={"id", "updated"}, exclude_none=True, mode="json")

    @classmethod
    def from_record(cls, record: dict) -> "Chat":
        return cls.model_validate(record)


@dataclass(frozen=True)
class ChatRef:
    """Platform-side identity of a chat before it is resolved against the store."""

    platform_chat_id: str
    source: MessageSource
    display_name: Optional[str] = None

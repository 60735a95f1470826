from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatbridge.models.enums import MessageSource, MessageType, ResponseMode
from chatbridge.models.timestamps import ensure_utc, format_store_datetime, parse_store_datetime


class Message(BaseModel):
    """One inbound or outbound chat message, as stored in the `messages` collection."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    platform_message_id: Optional[str] = Field(default=None, alias="platformMessageId")
    source: MessageSource
    chat_id: str = Field(default="", alias="chatId")
    type: MessageType = MessageType.TEXT
    content: str = ""
    media_file_id: Optional[str] = Field(default=None, alias="mediaFileId")
    is_incoming: bool = Field(alias="isIncoming")
    timestamp: datetime
    sender_id: str = Field(alias="senderId")
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    response_mode: ResponseMode = Field(default=ResponseMode.MANUAL, alias="responseMode")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return parse_store_datetime(value)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("media_file_id", "platform_message_id", "sender_name", mode="before")
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        # the store returns "" for unset text/relation fields
        return value or None

    @field_validator("content", mode="before")
    @classmethod
    def _content_not_null(cls, value: Any) -> Any:
        return value or ""

    def to_record(self) -> dict:
        record = self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True, mode="json")
        record["timestamp"] = format_store_datetime(self.timestamp)
        return record

    @classmethod
    def from_record(cls, record: dict) -> "Message":
        return cls.model_validate(record)

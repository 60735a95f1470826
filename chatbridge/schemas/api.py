from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class SendMessageRequest(BaseModel):
    # required fields are checked by the endpoint so it can answer with {success: false}
    model_config = ConfigDict(coerce_numbers_to_str=True)

    chatId: Optional[str] = None
    platformChatId: Optional[str] = None
    source: Optional[str] = None
    text: Optional[str] = None
    visitorId: Optional[str] = None
    senderName: Optional[str] = None
    type: Optional[str] = None


class ExternalDelivery(BaseModel):
    platform: str
    messageId: Optional[str] = None


class SendMessageResponse(BaseModel):
    success: bool
    message: str
    external: Optional[ExternalDelivery] = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str


class ChatListResponse(BaseModel):
    success: bool = True
    total: int
    chats: list[dict[str, Any]]


class MessageListResponse(BaseModel):
    success: bool = True
    chatId: str
    total: int
    messages: list[dict[str, Any]]


class AutoModeRequest(BaseModel):
    autoMode: Optional[bool] = None


class AutoModeResponse(BaseModel):
    success: bool = True
    chatId: str
    autoMode: bool


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    service: str
    database: str

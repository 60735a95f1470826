import time
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from chatbridge.dependencies import ServiceContainer, get_container, require_api_key
from chatbridge.logging_config import get_logger
from chatbridge.models import Chat, Message, MessageSource, MessageType, ResponseMode
from chatbridge.models.timestamps import utcnow
from chatbridge.schemas.api import (
    AutoModeRequest,
    AutoModeResponse,
    ChatListResponse,
    ErrorResponse,
    ExternalDelivery,
    MessageListResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from chatbridge.services.storage_service import StoreError

logger = get_logger("messages_api")

router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

API_SENDER_ID = "api_client"
API_SENDER_NAME = "API Client"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(message=message).model_dump())


async def _resolve_chat(container: ServiceContainer, request: SendMessageRequest) -> Optional[Chat]:
    store = container.store
    if request.chatId:
        chat = await store.get_chat_by_id(request.chatId)
        if chat:
            return chat
    chat = await store.find_chat(request.platformChatId)
    if chat is None and request.source in {s.value for s in MessageSource}:
        chat = await store.find_or_create_chat(request.platformChatId, MessageSource(request.source))
    return chat


async def _persist_outbound(container: ServiceContainer, request: SendMessageRequest, external_id: str) -> None:
    try:
        chat = await _resolve_chat(container, request)
        if chat is None or not chat.id:
            logger.warning(
                "Sent message not saved: chat not found",
                extra={"context": {"platform_chat_id": request.platformChatId, "source": request.source}},
            )
            return

        message_type = request.type if request.type in {t.value for t in MessageType} else MessageType.TEXT
        message = Message(
            source=chat.source,
            platform_message_id=external_id or f"api_{int(time.time() * 1000)}",
            chat_id=chat.id,
            type=message_type,
            content=request.text,
            is_incoming=False,
            timestamp=utcnow(),
            sender_id=API_SENDER_ID,
            sender_name=request.senderName or API_SENDER_NAME,
            response_mode=ResponseMode.MANUAL,
        )
        await container.store.save_message(message)
    except StoreError as e:
        # delivery already happened, so the request still succeeds
        logger.error(f"Sent message not saved: {e}", extra={"context": {"platform_chat_id": request.platformChatId}})


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(request: SendMessageRequest, container: ServiceContainer = Depends(get_container)):
    """Send a manual message to a chat through the platform its source tag belongs to."""
    logger.info(
        "Received message request",
        extra={"context": {"source": request.source, "platform_chat_id": request.platformChatId}},
    )

    if not request.platformChatId or not request.source or not request.text:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required fields: platformChatId, source, visitorId or text")

    adapter = container.adapter_for(request.source)
    if adapter is None:
        return _error(status.HTTP_400_BAD_REQUEST, f"Unsupported source: {request.source}")

    handle = request.platformChatId if adapter is container.telegram else request.visitorId
    if not handle:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required fields: platformChatId, source, visitorId or text")

    external_id = await adapter.send_outbound(handle, request.text)
    if external_id is None:
        return _error(status.HTTP_502_BAD_GATEWAY, f"Failed to deliver message via {request.source}")

    await _persist_outbound(container, request, external_id)

    return SendMessageResponse(
        success=True,
        message=f"Message sent via {request.source}",
        external=ExternalDelivery(platform=request.source, messageId=external_id or None),
    )


@router.get("/chats", response_model=ChatListResponse)
async def list_chats(
    source: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
):
    page = await container.store.get_chats(source, limit)
    return ChatListResponse(
        total=page.total,
        chats=[chat.model_dump(by_alias=True, mode="json") for chat in page.items],
    )


@router.get("/chats/{chat_id}/messages", response_model=MessageListResponse)
async def list_messages(
    chat_id: str,
    limit: int = Query(100, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
):
    chat = await container.store.get_chat_by_id(chat_id)
    if chat is None:
        return _error(status.HTTP_404_NOT_FOUND, f"Chat with ID {chat_id} not found")

    page = await container.store.get_messages(chat_id, limit)
    return MessageListResponse(
        chatId=chat_id,
        total=page.total,
        messages=[message.model_dump(by_alias=True, mode="json") for message in page.items],
    )


@router.patch("/chats/{chat_id}/autoMode", response_model=AutoModeResponse)
async def update_auto_mode(
    chat_id: str,
    payload: Optional[AutoModeRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    if payload is None or payload.autoMode is None:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required field: autoMode")

    chat = await container.store.get_chat_by_id(chat_id)
    if chat is None:
        return _error(status.HTTP_404_NOT_FOUND, f"Chat with ID {chat_id} not found")

    await container.store.update_auto_mode(chat_id, payload.autoMode)
    return AutoModeResponse(chatId=chat_id, autoMode=payload.autoMode)

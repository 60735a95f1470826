import asyncio
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from chatbridge.dependencies import ServiceContainer, get_container, require_api_key
from chatbridge.logging_config import get_logger
from chatbridge.services.sse import format_sse
from chatbridge.services.storage_service import ChangeEvent, StoreGateway

logger = get_logger("stream")

router = APIRouter(dependencies=[Depends(require_api_key)])


def change_to_update(change: ChangeEvent, chat_id: Optional[str] = None, source: Optional[str] = None) -> Optional[dict]:
    """Build the `update` event body for a store change, or None if the client filters it out."""
    if change.collection == "chats":
        if source and change.record.get("source") != source:
            return None
        return {"type": "chat", "action": change.action, "record": change.record}
    if change.collection == "messages":
        if chat_id and change.record.get("chatId") != chat_id:
            return None
        return {"type": "message", "action": change.action, "record": change.record}
    return None


async def event_stream(
    store: StoreGateway,
    chat_id: Optional[str],
    source: Optional[str],
    ping_interval: float,
) -> AsyncIterator[str]:
    queue: asyncio.Queue = asyncio.Queue()

    async def pump_changes() -> None:
        try:
            async for change in store.subscribe_changes():
                update = change_to_update(change, chat_id, source)
                if update:
                    await queue.put(format_sse("update", update))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"SSE stream error: {e}", exc_info=True)
            await queue.put(format_sse("error", {"type": "error", "message": "Stream error occurred"}))

    async def pump_pings() -> None:
        while True:
            await asyncio.sleep(ping_interval)
            await queue.put(format_sse("ping", {"type": "ping"}))

    yield format_sse("connection", {"type": "connected"})

    tasks = [asyncio.create_task(pump_changes()), asyncio.create_task(pump_pings())]
    try:
        while True:
            yield await queue.get()
    finally:
        for task in tasks:
            task.cancel()
        logger.info("Client disconnected from SSE stream")


@router.get("/api/stream")
async def stream_updates(
    chatId: Optional[str] = None,
    source: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
):
    return StreamingResponse(
        event_stream(container.store, chatId, source, container.settings.stream_ping_interval_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from chatbridge.dependencies import ServiceContainer, get_container, secret_matches
from chatbridge.logging_config import get_logger
from chatbridge.services.ingestion_service import IngestionOutcome

logger = get_logger("telegram_webhook")

router = APIRouter()


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


async def process_telegram_update(container: ServiceContainer, body: dict) -> Optional[IngestionOutcome]:
    """Normalize, dedup and ingest one update. Shared by the webhook and the polling worker."""
    update_id = body.get("update_id")
    try:
        inbound = container.telegram.normalize_inbound(body)
        if inbound is None:
            return None
        if await container.dedup.is_duplicate(inbound.event_id):
            return None
        return await container.ingestion.ingest(container.telegram, inbound)
    except Exception as e:
        logger.error(f"Error processing Telegram update: {e}", extra={"context": {"update_id": update_id}}, exc_info=True)
        return None


@router.post("/telegram-webhook/{secret}")
async def handle_telegram_webhook(secret: str, request: Request, container: ServiceContainer = Depends(get_container)):
    if not secret_matches(secret, container.settings.telegram_webhook_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    body = await parse_telegram_update(request)
    if isinstance(body, dict):
        await process_telegram_update(container, body)
    return {"ok": True}

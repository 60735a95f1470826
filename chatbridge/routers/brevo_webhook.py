from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from chatbridge.dependencies import ServiceContainer, get_container, secret_matches
from chatbridge.logging_config import get_logger
from chatbridge.schemas.brevo import EmptyEvent, WebhookPayloadError, parse_brevo_webhook
from chatbridge.services.channels import NormalizedInbound
from chatbridge.services.ingestion_service import IngestionOutcome

logger = get_logger("brevo_webhook")

router = APIRouter()

ACK_RECEIVED = "Webhook received successfully"
ACK_DUPLICATE = "Duplicate message skipped"
ACK_EMPTY = "No message found in webhook"
ACK_UNSUPPORTED = "Unsupported webhook payload"


async def process_brevo_event(container: ServiceContainer, inbound: NormalizedInbound) -> Optional[IngestionOutcome]:
    """Ingest one normalized Brevo event. Failures are logged, never raised."""
    try:
        return await container.ingestion.ingest(container.brevo, inbound)
    except Exception as e:
        logger.error(f"Error processing Brevo message: {e}", extra={"context": {"event_id": inbound.event_id}}, exc_info=True)
        return None


@router.post("/brevohook/{secret}", response_class=PlainTextResponse)
async def handle_brevo_webhook(secret: str, request: Request, container: ServiceContainer = Depends(get_container)):
    """
    Handle Brevo conversations webhooks.

    Always answers 200 once the secret matches: Brevo retries on anything else.
    """
    if not secret_matches(secret, container.settings.brevo_webhook_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    try:
        body = await request.json()
    except ValueError as e:
        logger.warning(f"Brevo webhook body is not JSON: {e}")
        return PlainTextResponse(ACK_UNSUPPORTED)

    logger.debug("Received webhook", extra={"context": {"body": body}})

    try:
        event = parse_brevo_webhook(body)
    except WebhookPayloadError as e:
        logger.warning(f"Unsupported Brevo webhook: {e}")
        return PlainTextResponse(ACK_UNSUPPORTED)

    if isinstance(event, EmptyEvent):
        return PlainTextResponse(ACK_EMPTY)

    try:
        inbound = container.brevo.normalize_inbound(event)
    except WebhookPayloadError as e:
        logger.warning(f"Unsupported Brevo message: {e}")
        return PlainTextResponse(ACK_UNSUPPORTED)

    # agent echoes of our own replies
    if inbound is None:
        return PlainTextResponse(ACK_RECEIVED)

    if await container.dedup.is_duplicate(inbound.event_id):
        logger.info(f"Skipping duplicate message ID: {inbound.event_id} (already processed)")
        return PlainTextResponse(ACK_DUPLICATE)

    await process_brevo_event(container, inbound)
    return PlainTextResponse(ACK_RECEIVED)

"""Brevo conversations webhook payloads.

A webhook body carries either a single `message` (conversationStarted) or a
`messages` list (conversationFragment). `parse_brevo_webhook` turns every body
into exactly one of the event variants below or raises `WebhookPayloadError`.
"""

from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

CONVERSATION_STARTED = "conversationStarted"
CONVERSATION_FRAGMENT = "conversationFragment"


class WebhookPayloadError(ValueError):
    """Webhook body does not match any supported event shape."""


class BrevoVisitor(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    threadId: str
    source: str
    displayedName: Optional[str] = None


class BrevoFile(BaseModel):
    isImage: bool = False
    link: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None


class BrevoMessage(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    type: str  # visitor, agent
    text: Optional[str] = None
    createdAt: Optional[int] = None  # epoch milliseconds
    agentId: Optional[str] = None
    agentName: Optional[str] = None
    file: Optional[BrevoFile] = None


class BrevoWebhookPayload(BaseModel):
    eventName: Optional[str] = None
    visitor: Optional[dict] = None
    message: Optional[dict] = None
    messages: Optional[list[dict]] = None

    def first_message(self) -> Optional[dict]:
        if self.message:
            return self.message
        if self.messages:
            return self.messages[0]
        return None


@dataclass(frozen=True)
class VisitorMessageEvent:
    event_name: str
    visitor: BrevoVisitor
    message: BrevoMessage


@dataclass(frozen=True)
class AgentMessageEvent:
    event_name: Optional[str]
    visitor: BrevoVisitor
    message: BrevoMessage


@dataclass(frozen=True)
class EmptyEvent:
    event_name: Optional[str] = None


BrevoEvent = Union[VisitorMessageEvent, AgentMessageEvent, EmptyEvent]


def parse_brevo_webhook(body) -> BrevoEvent:
    if not isinstance(body, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    try:
        payload = BrevoWebhookPayload.model_validate(body)
        raw_message = payload.first_message()
        if raw_message is None:
            return EmptyEvent(event_name=payload.eventName)

        message = BrevoMessage.model_validate(raw_message)
        if payload.visitor is None:
            raise WebhookPayloadError(f"Message {message.id} has no visitor")
        visitor = BrevoVisitor.model_validate(payload.visitor)
    except ValidationError as e:
        raise WebhookPayloadError(f"Invalid webhook payload: {e.error_count()} validation errors") from e

    if message.type == "agent":
        return AgentMessageEvent(event_name=payload.eventName, visitor=visitor, message=message)

    if message.type != "visitor":
        raise WebhookPayloadError(f"Unsupported message type: {message.type}")

    if payload.eventName == CONVERSATION_STARTED and payload.message:
        return VisitorMessageEvent(event_name=payload.eventName, visitor=visitor, message=message)
    if payload.eventName == CONVERSATION_FRAGMENT and payload.messages:
        return VisitorMessageEvent(event_name=payload.eventName, visitor=visitor, message=message)

    raise WebhookPayloadError(f"Unsupported event for visitor message: {payload.eventName}")

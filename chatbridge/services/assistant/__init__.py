from chatbridge.services.assistant.base import AssistantAPIError, AssistantMessage, AssistantProvider, RunStatus
from chatbridge.services.assistant.openai_assistant import OpenAIAssistantProvider
from chatbridge.services.assistant.polling import RunFailedError, RunTimeoutError, poll_run

__all__ = [
    "AssistantAPIError",
    "AssistantMessage",
    "AssistantProvider",
    "OpenAIAssistantProvider",
    "RunFailedError",
    "RunStatus",
    "RunTimeoutError",
    "poll_run",
]

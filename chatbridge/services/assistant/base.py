from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class AssistantAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass
class RunStatus:
    id: str
    status: str


@dataclass
class AssistantMessage:
    role: str
    content_type: str
    text: str = ""


class AssistantProvider(ABC):
    """Abstract base class for thread-based assistant backends."""

    @abstractmethod
    async def create_thread(self) -> str:
        pass

    @abstractmethod
    async def add_message(self, thread_id: str, content: str) -> None:
        pass

    @abstractmethod
    async def create_run(self, thread_id: str, assistant_id: str) -> RunStatus:
        pass

    @abstractmethod
    async def retrieve_run(self, thread_id: str, run_id: str) -> RunStatus:
        pass

    @abstractmethod
    async def latest_message(self, thread_id: str) -> Optional[AssistantMessage]:
        """Most recent message in the thread, or None for an empty thread."""
        pass

    @abstractmethod
    async def describe_image(self, data_url: str, prompt: str) -> str:
        """Vision description of an image data URL. Empty string when the model returns nothing."""
        pass

    @abstractmethod
    async def transcribe_audio(self, audio_bytes: bytes, filename: str, mime_type: str) -> str:
        pass

    async def aclose(self) -> None:
        pass

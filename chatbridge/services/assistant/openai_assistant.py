from typing import Optional

import httpx

from chatbridge.logging_config import get_logger
from chatbridge.services.assistant.base import AssistantAPIError, AssistantMessage, AssistantProvider, RunStatus

logger = get_logger("assistant.openai")


class OpenAIAssistantProvider(AssistantProvider):
    """OpenAI Assistants v2, chat completions and audio transcriptions over REST."""

    def __init__(
        self,
        api_key: str,
        *,
        vision_model: str = "gpt-4o-mini",
        audio_model: str = "whisper-1",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.vision_model = vision_model
        self.audio_model = audio_model
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, beta: bool = True) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if beta:
            headers["OpenAI-Beta"] = "assistants=v2"
        return headers

    async def _post(self, path: str, *, beta: bool = True, **kwargs) -> httpx.Response:
        response = await self._client.post(path, headers=self._headers(beta), **kwargs)
        self._check(response, path)
        return response

    async def _get(self, path: str, **kwargs) -> httpx.Response:
        response = await self._client.get(path, headers=self._headers(), **kwargs)
        self._check(response, path)
        return response

    @staticmethod
    def _check(response: httpx.Response, path: str) -> None:
        logger.debug(f"OpenAI response status: {response.status_code}", extra={"context": {"path": path}})
        if response.status_code >= 400:
            logger.error(f"OpenAI error: {response.text[:500]}", extra={"context": {"path": path}})
            raise AssistantAPIError(
                f"OpenAI API error: {response.status_code} on {path}",
                status_code=response.status_code,
                body=response.text,
            )

    # === THREADS AND RUNS ===

    async def create_thread(self) -> str:
        response = await self._post("/threads", json={})
        return response.json()["id"]

    async def add_message(self, thread_id: str, content: str) -> None:
        await self._post(f"/threads/{thread_id}/messages", json={"role": "user", "content": content})

    async def create_run(self, thread_id: str, assistant_id: str) -> RunStatus:
        data = (await self._post(f"/threads/{thread_id}/runs", json={"assistant_id": assistant_id})).json()
        return RunStatus(id=data["id"], status=data.get("status", "queued"))

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunStatus:
        data = (await self._get(f"/threads/{thread_id}/runs/{run_id}")).json()
        return RunStatus(id=data["id"], status=data["status"])

    async def latest_message(self, thread_id: str) -> Optional[AssistantMessage]:
        data = (await self._get(f"/threads/{thread_id}/messages", params={"order": "desc", "limit": 1})).json()
        items = data.get("data") or []
        if not items:
            return None

        latest = items[0]
        content = (latest.get("content") or [{}])[0]
        content_type = content.get("type", "")
        text = content.get("text", {}).get("value", "") if content_type == "text" else ""
        return AssistantMessage(role=latest.get("role", ""), content_type=content_type, text=text)

    # === MEDIA ===

    async def describe_image(self, data_url: str, prompt: str) -> str:
        payload = {
            "model": self.vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
            "max_tokens": 500,
        }
        logger.debug(f"OpenAI vision request: model={self.vision_model}")
        data = (await self._post("/chat/completions", beta=False, json=payload)).json()

        content = ""
        if data.get("choices"):
            content = data["choices"][0].get("message", {}).get("content") or ""
        return content

    async def transcribe_audio(self, audio_bytes: bytes, filename: str, mime_type: str) -> str:
        """Transcribe audio using OpenAI speech-to-text."""
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename, audio_bytes, mime_type)}
        data = {"model": self.audio_model, "response_format": "json"}
        response = await self._post("/audio/transcriptions", beta=False, files=files, data=data)

        transcript = (response.json().get("text") or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript

"""Gateway to the PocketBase record store.

Every store call goes through `_call_with_refresh`: when the store answers
with an auth error the session is refreshed once and the call is retried
once. A second auth error ends the call with an `auth_exhausted` result,
which the public methods raise as `StoreAuthExhaustedError`.
"""

import base64
import json
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

import httpx

from chatbridge.logging_config import get_logger
from chatbridge.models import Chat, Message, MessageSource
from chatbridge.services.alert_service import alert_critical
from chatbridge.services.result import Result
from chatbridge.services.sse import iter_sse_events

logger = get_logger("storage_service")

T = TypeVar("T")

SUPERUSERS = "_superusers"
CHATS = "chats"
MESSAGES = "messages"
MEDIA = "media"


class StoreError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, data: Optional[dict] = None):
        self.status = status
        self.data = data or {}
        super().__init__(message)


class SessionExpiredError(StoreError):
    """401/403 from the store: the superuser session is no longer accepted."""


class StoreValidationError(StoreError):
    """400 from the store: the payload does not match the collection schema."""


class StoreNotFoundError(StoreError):
    pass


class StoreAuthExhaustedError(StoreError):
    """Auth still rejected after one refresh and one retry."""


def _error_for(response: httpx.Response) -> StoreError:
    try:
        data = response.json()
    except ValueError:
        data = {"message": response.text[:200]}
    message = f"{response.request.method} {response.request.url.path} -> {response.status_code}: {data.get('message', '')}"
    if response.status_code in (401, 403):
        return SessionExpiredError(message, response.status_code, data)
    if response.status_code == 400:
        return StoreValidationError(message, response.status_code, data)
    if response.status_code == 404:
        return StoreNotFoundError(message, response.status_code, data)
    return StoreError(message, response.status_code, data)


def _quote(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _token_expired(token: str, leeway_seconds: int = 30) -> bool:
    try:
        payload_part = token.split(".")[1]
        payload_part += "=" * (-len(payload_part) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload_part))
    except (IndexError, ValueError):
        return True
    exp = claims.get("exp")
    if exp is None:
        return False
    return exp <= time.time() + leeway_seconds


@dataclass
class StoreSession:
    """Superuser auth token shared by all store calls of the process."""

    token: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return bool(self.token) and not _token_expired(self.token)

    def clear(self) -> None:
        self.token = None


@dataclass
class RecordPage:
    total: int
    items: list = field(default_factory=list)


@dataclass
class MediaRecord:
    id: str
    collection_id: str
    collection_name: str
    file: str
    platform: Optional[str] = None


@dataclass
class MediaDownload:
    status_code: int
    content: bytes
    content_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class ChangeEvent:
    collection: str
    action: str
    record: dict


class StoreGateway:
    """Sole reader/writer of chats, messages and media in the record store."""

    def __init__(
        self,
        base_url: str,
        email: str,
        password: str,
        *,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        session: Optional[StoreSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.session = session or StoreSession()
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def is_connected(self) -> bool:
        return self.session.is_valid

    # === TRANSPORT ===

    async def _request(self, method: str, path: str, *, auth: bool = True, **kwargs) -> dict:
        headers = kwargs.pop("headers", None) or {}
        if auth and self.session.token:
            headers["Authorization"] = self.session.token
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise _error_for(response)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _call_with_refresh(self, operation: Callable[[], Awaitable[T]], name: str) -> Result[T]:
        try:
            return Result.success(await operation())
        except SessionExpiredError as exc:
            logger.info(
                "Store session rejected, re-authenticating",
                extra={"context": {"operation": name, "status": exc.status}},
            )

        await self.refresh_authentication()

        try:
            return Result.success(await operation(), attempts=2)
        except SessionExpiredError as exc:
            logger.error(
                "Store session rejected after re-authentication",
                extra={"context": {"operation": name, "status": exc.status}},
            )
            return Result.exhausted(str(exc))

    async def _run(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        result = await self._call_with_refresh(operation, name)
        if result.is_exhausted:
            await alert_critical("Record store rejects re-authenticated session", {"operation": name})
            raise StoreAuthExhaustedError(f"{name}: {result.error}")
        return result.value

    # === AUTH ===

    async def authenticate(self, *, silent: bool = False) -> None:
        try:
            data = await self._request(
                "POST",
                f"/api/collections/{SUPERUSERS}/auth-with-password",
                auth=False,
                json={"identity": self.email, "password": self.password},
            )
        except StoreError as exc:
            logger.error(f"Store {'re-' if silent else ''}authentication failed: {exc}")
            raise
        self.session.token = data.get("token")
        logger.info("Store re-authentication successful" if silent else "Store authentication successful")

    async def refresh_authentication(self) -> None:
        if self.session.is_valid:
            try:
                data = await self._request("POST", f"/api/collections/{SUPERUSERS}/auth-refresh")
                self.session.token = data.get("token") or self.session.token
                return
            except StoreError as exc:
                logger.warning(f"Store token refresh failed, logging in again: {exc}")
        self.session.clear()
        await self.authenticate(silent=True)

    # === RECORD HELPERS ===

    async def _first_item(self, collection: str, filter_expr: str) -> dict:
        data = await self._request(
            "GET",
            f"/api/collections/{collection}/records",
            params={"page": 1, "perPage": 1, "filter": filter_expr, "skipTotal": 1},
        )
        items = data.get("items") or []
        if not items:
            raise StoreNotFoundError(f"No {collection} record matches {filter_expr}", 404)
        return items[0]

    async def _list(self, collection: str, *, limit: int, sort: str, filter_expr: str = "") -> dict:
        params = {"page": 1, "perPage": limit, "sort": sort}
        if filter_expr:
            params["filter"] = filter_expr
        return await self._request("GET", f"/api/collections/{collection}/records", params=params)

    # === CHATS ===

    async def find_chat(self, platform_chat_id: str) -> Optional[Chat]:
        try:
            record = await self._run(
                lambda: self._first_item(CHATS, f"platformChatId={_quote(platform_chat_id)}"),
                "find_chat",
            )
        except (StoreNotFoundError, StoreValidationError):
            return None
        return Chat.from_record(record)

    async def find_or_create_chat(
        self,
        platform_chat_id: str,
        source: MessageSource,
        display_name: Optional[str] = None,
    ) -> Optional[Chat]:
        """Find chat by platform id or create it. Returns None on failure; callers must check."""
        try:
            chat = await self.find_chat(platform_chat_id)
            if chat:
                return chat

            new_chat = Chat(
                platform_chat_id=platform_chat_id,
                source=source,
                name=display_name or "Unknown",
                auto_mode=False,
                openai_thread_id="",
            )
            saved = await self.save_chat(new_chat)
            logger.info(
                "Chat created",
                extra={"context": {"chat_id": saved.id, "platform_chat_id": platform_chat_id, "source": source.value}},
            )
            return saved
        except StoreError as exc:
            logger.error(
                f"Error in find chat for {source.value} sourceId {platform_chat_id}: {exc}",
                exc_info=True,
            )
            return None

    async def save_chat(self, chat: Chat) -> Chat:
        """Create or update a chat depending on whether it already has an id."""
        record = chat.to_record()

        if chat.id:
            operation = lambda: self._request("PATCH", f"/api/collections/{CHATS}/records/{chat.id}", json=record)
        else:
            operation = lambda: self._request("POST", f"/api/collections/{CHATS}/records", json=record)

        try:
            saved = await self._run(operation, "save_chat")
        except (StoreValidationError, StoreNotFoundError) as exc:
            logger.error(f"Unable to save chat: {exc}", extra={"context": {"chat_id": chat.id}})
            raise
        return Chat.from_record(saved)

    async def get_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        try:
            record = await self._run(
                lambda: self._request("GET", f"/api/collections/{CHATS}/records/{chat_id}"),
                "get_chat_by_id",
            )
        except (StoreNotFoundError, StoreValidationError):
            logger.warning(f"Chat not found: {chat_id}")
            return None
        return Chat.from_record(record)

    async def get_chats(self, source: Optional[str] = None, limit: int = 50) -> RecordPage:
        filter_expr = f"source={_quote(source)}" if source else ""
        data = await self._run(lambda: self._list(CHATS, limit=limit, sort="-updated", filter_expr=filter_expr), "get_chats")
        return RecordPage(
            total=data.get("totalItems", 0),
            items=[Chat.from_record(item) for item in data.get("items", [])],
        )

    async def update_auto_mode(self, chat_id: str, auto_mode: bool) -> Chat:
        record = await self._run(
            lambda: self._request("PATCH", f"/api/collections/{CHATS}/records/{chat_id}", json={"autoMode": auto_mode}),
            "update_auto_mode",
        )
        logger.info("Chat auto mode updated", extra={"context": {"chat_id": chat_id, "auto_mode": auto_mode}})
        return Chat.from_record(record)

    # === MESSAGES ===

    async def save_message(self, message: Message) -> Message:
        record = message.to_record()
        try:
            saved = await self._run(
                lambda: self._request("POST", f"/api/collections/{MESSAGES}/records", json=record),
                "save_message",
            )
        except StoreValidationError as exc:
            logger.error(
                f"Unable to save message: {exc}",
                extra={"context": {"platform_message_id": message.platform_message_id, "errors": exc.data}},
            )
            raise
        return Message.from_record(saved)

    async def get_message_by_id(self, platform_message_id: str, sender_id: str) -> Optional[str]:
        """Return the store id of a message already saved for this platform id and sender."""
        filter_expr = f"platformMessageId={_quote(platform_message_id)} && senderId={_quote(sender_id)}"
        try:
            record = await self._run(lambda: self._first_item(MESSAGES, filter_expr), "get_message_by_id")
        except (StoreNotFoundError, StoreValidationError):
            return None
        return record.get("id")

    async def get_messages(self, chat_id: str, limit: int = 100) -> RecordPage:
        data = await self._run(
            lambda: self._list(MESSAGES, limit=limit, sort="timestamp", filter_expr=f"chatId={_quote(chat_id)}"),
            "get_messages",
        )
        return RecordPage(
            total=data.get("totalItems", 0),
            items=[Message.from_record(item) for item in data.get("items", [])],
        )

    # === MEDIA ===

    async def save_media_file(self, data: bytes, filename: str, content_type: str, platform: str) -> str:
        try:
            record = await self._run(
                lambda: self._request(
                    "POST",
                    f"/api/collections/{MEDIA}/records",
                    data={"platform": platform},
                    files={"file": (filename, data, content_type)},
                ),
                "save_media_file",
            )
        except (StoreValidationError, StoreNotFoundError) as exc:
            logger.error(f"Unable to save file: {exc}", extra={"context": {"filename": filename}})
            raise
        return record["id"]

    async def get_media_record(self, media_id: str) -> Optional[MediaRecord]:
        try:
            record = await self._run(
                lambda: self._request("GET", f"/api/collections/{MEDIA}/records/{media_id}"),
                "get_media_record",
            )
        except (StoreNotFoundError, StoreValidationError):
            logger.error(f"Failed to get media record for {media_id}")
            return None
        return MediaRecord(
            id=record["id"],
            collection_id=record.get("collectionId") or MEDIA,
            collection_name=record.get("collectionName") or MEDIA,
            file=record.get("file") or "",
            platform=record.get("platform"),
        )

    async def get_file_token(self) -> str:
        data = await self._run(lambda: self._request("POST", "/api/files/token"), "get_file_token")
        return data.get("token", "")

    def build_file_url(self, record: MediaRecord, token: Optional[str] = None) -> str:
        url = f"{self.base_url}/api/files/{record.collection_id}/{record.id}/{record.file}"
        if token:
            url += f"?token={token}"
        return url

    async def download_media(self, media_id: str) -> MediaDownload:
        """Download a stored media blob through a tokenized file URL."""
        record = await self.get_media_record(media_id)
        if record is None or not record.file:
            raise StoreNotFoundError(f"Media {media_id} has no stored file", 404)

        token = await self.get_file_token()
        url = self.build_file_url(record, token)
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise StoreError(f"Media download failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(f"Download failed: {response.status_code} {response.reason_phrase}")
        return MediaDownload(
            status_code=response.status_code,
            content=response.content,
            content_type=response.headers.get("content-type"),
        )

    # === CHANGE FEED ===

    async def subscribe_changes(self, collections: Iterable[str] = (CHATS, MESSAGES)) -> AsyncIterator[ChangeEvent]:
        """Yield record changes from the store realtime feed until cancelled."""
        topics = [f"{collection}/*" for collection in collections]

        async with self._client.stream("GET", "/api/realtime", timeout=httpx.Timeout(None)) as response:
            if response.status_code >= 400:
                await response.aread()
                raise _error_for(response)

            async for event in iter_sse_events(response.aiter_lines()):
                if event.event == "PB_CONNECT":
                    client_id = json.loads(event.data).get("clientId")
                    await self._run(
                        lambda: self._request(
                            "POST",
                            "/api/realtime",
                            json={"clientId": client_id, "subscriptions": topics},
                        ),
                        "subscribe_changes",
                    )
                    logger.info("Subscribed to store changes", extra={"context": {"topics": topics}})
                    continue

                try:
                    payload = json.loads(event.data)
                except ValueError:
                    logger.warning(f"Invalid change event payload on {event.event}")
                    continue
                yield ChangeEvent(
                    collection=event.event.split("/", 1)[0],
                    action=payload.get("action", ""),
                    record=payload.get("record") or {},
                )

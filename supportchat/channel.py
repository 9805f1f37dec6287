"""
Push-channel client.

One EventChannel owns the process's single long-lived connection to the
backend's event stream. Views subscribe to a chat's room with join/leave
signals on that same connection; they never open a second one. Every inbound
frame is validated and normalized here (identifiers become canonical strings)
before handlers see it, so handlers compare identifiers with plain ``==``.

Frames are JSON objects of the form ``{"type": <event>, "payload": {...}}``.
"""
import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

import aiohttp
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from supportchat.config import CHANNEL_HEARTBEAT, SOCKET_URL
from supportchat.db.models import CHAT_STATUSES, Message, canonical_id, parse_timestamp
from supportchat.errors import ChannelError

logger = logging.getLogger(__name__)

# transport failures surfaced to callers as ChannelError
_TRANSPORT_ERRORS = (OSError, aiohttp.ClientError, asyncio.TimeoutError)

EVENT_NEW_MESSAGE = "new-message"
EVENT_CHAT_UPDATED = "chat-updated"
EVENT_TYPING = "typing"
EVENT_ADMIN_STATUS = "admin-status"

SIGNAL_JOIN = "join-chat"
SIGNAL_LEAVE = "leave-chat"
SIGNAL_UPDATE_STATUS = "update-chat-status"
SIGNAL_TYPING = "typing"


# ─────────────────────────────────────────────
# Typed inbound events
# ─────────────────────────────────────────────

class _ChatEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    chat_id: str = Field(validation_alias=AliasChoices("chatId", "chat_id"))

    @field_validator("chat_id", mode="before")
    @classmethod
    def _canonical_chat_id(cls, v):
        cid = canonical_id(v)
        if cid is None:
            raise ValueError("chat id is required")
        return cid


class NewMessageEvent(_ChatEvent):
    id: str
    sender_type: str = "system"
    sender_name: Optional[str] = None
    content: Optional[str] = None
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def _timestamp(cls, v):
        return parse_timestamp(v)

    @field_validator("id", mode="before")
    @classmethod
    def _canonical_message_id(cls, v):
        mid = canonical_id(v)
        if mid is None:
            raise ValueError("message id is required")
        return mid

    def to_message(self) -> Message:
        return Message.from_payload(self.model_dump())


class ChatUpdatedEvent(_ChatEvent):
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _known_status(cls, v):
        if v is not None and v not in CHAT_STATUSES:
            raise ValueError(f"unknown status '{v}'")
        return v


class TypingEvent(_ChatEvent):
    is_typing: bool = Field(validation_alias=AliasChoices("isTyping", "is_typing"))
    sender_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("senderName", "sender_name"))


class AdminStatusEvent(_ChatEvent):
    admin_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("adminName", "admin_name"))


ChannelEvent = Union[NewMessageEvent, ChatUpdatedEvent, TypingEvent, AdminStatusEvent]

EVENT_MODELS: dict[str, type[BaseModel]] = {
    EVENT_NEW_MESSAGE: NewMessageEvent,
    EVENT_CHAT_UPDATED: ChatUpdatedEvent,
    EVENT_TYPING: TypingEvent,
    EVENT_ADMIN_STATUS: AdminStatusEvent,
}

Handler = Callable[[Any], Union[Awaitable[None], None]]


def parse_event(event_type: str, payload: Any) -> Optional[ChannelEvent]:
    """Normalize a raw frame into a typed event; None for unknown or malformed frames."""
    model = EVENT_MODELS.get(event_type)
    if model is None:
        logger.debug(f"Ignoring unknown channel event '{event_type}'")
        return None
    if not isinstance(payload, dict):
        logger.warning(f"Dropping '{event_type}' frame with non-object payload: {payload!r}")
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Dropping malformed '{event_type}' frame: {e.error_count()} error(s): {payload!r}")
        return None


# ─────────────────────────────────────────────
# Transports
# ─────────────────────────────────────────────

class ChannelTransport(Protocol):
    async def open(self) -> None: ...

    async def send(self, event_type: str, payload: dict) -> None: ...

    def frames(self) -> AsyncIterator[tuple[str, Any]]: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """JSON-over-WebSocket transport built on aiohttp."""

    def __init__(self, url: str = SOCKET_URL, headers: Optional[dict] = None,
                 heartbeat: float = CHANNEL_HEARTBEAT) -> None:
        self.url = url
        self.headers = headers or {}
        self.heartbeat = heartbeat
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def open(self) -> None:
        self._session = aiohttp.ClientSession(headers=self.headers)
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat or None)
        except _TRANSPORT_ERRORS:
            await self._session.close()
            self._session = None
            raise
        logger.info(f"Channel connected to {self.url}")

    async def send(self, event_type: str, payload: dict) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionError("channel is not connected")
        await self._ws.send_json({"type": event_type, "payload": payload})

    async def frames(self) -> AsyncIterator[tuple[str, Any]]:
        if self._ws is None:
            return
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    logger.warning(f"Dropping non-JSON channel frame: {msg.data[:200]!r}")
                    continue
                if isinstance(data, dict) and data.get("type"):
                    yield data["type"], data.get("payload")
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                logger.info(f"Channel stream ended: {msg.type.name}")
                break

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None


# ─────────────────────────────────────────────
# Channel client
# ─────────────────────────────────────────────

class EventChannel:
    """Shared push-channel client.

    Create one per process and pass it to every session or dashboard that
    needs live events.
    """

    def __init__(self, transport: ChannelTransport) -> None:
        self._transport = transport
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._rooms: set[str] = set()
        self._reader: Optional[asyncio.Task] = None
        self._connected = False
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def rooms(self) -> frozenset:
        return frozenset(self._rooms)

    async def connect(self) -> None:
        """Open the connection once; later calls are no-ops."""
        async with self._connect_lock:
            if self._connected:
                return
            try:
                await self._transport.open()
            except _TRANSPORT_ERRORS as e:
                raise ChannelError("connect", e) from e
            self._connected = True
            self._reader = asyncio.create_task(self._read_loop(), name="supportchat-channel-reader")

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._connected:
            await self._transport.close()
            self._connected = False
        self._rooms.clear()

    # ── subscriptions ───────────────────────────────────────────────────────

    def on(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again."""
        if event_type not in EVENT_MODELS:
            raise ValueError(f"Unknown channel event '{event_type}'")
        self._handlers[event_type].append(handler)
        return lambda: self.off(event_type, handler)

    def off(self, event_type: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def join(self, chat_id) -> None:
        cid = canonical_id(chat_id)
        await self.emit(SIGNAL_JOIN, {"chatId": cid})
        self._rooms.add(cid)
        logger.debug(f"Joined chat room {cid}")

    async def leave(self, chat_id) -> None:
        cid = canonical_id(chat_id)
        if cid not in self._rooms:
            return
        await self.emit(SIGNAL_LEAVE, {"chatId": cid})
        self._rooms.discard(cid)
        logger.debug(f"Left chat room {cid}")

    async def emit(self, event_type: str, payload: dict) -> None:
        if not self._connected:
            raise ChannelError(event_type, ConnectionError("channel is not connected"))
        try:
            await self._transport.send(event_type, payload)
        except _TRANSPORT_ERRORS as e:
            logger.warning(f"Sending '{event_type}' failed: {e}")
            raise ChannelError(event_type, e) from e

    # ── inbound ─────────────────────────────────────────────────────────────

    async def feed(self, event_type: str, payload: Any) -> Optional[ChannelEvent]:
        """Normalize one raw frame and deliver it to the registered handlers.

        Handlers run in registration order and are awaited, so events reach
        them in the order the channel delivered them. A failing handler is
        logged and does not stop delivery to the others.
        """
        event = parse_event(event_type, payload)
        if event is None:
            return None
        for handler in list(self._handlers.get(event_type, [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(f"Channel handler {getattr(handler, '__qualname__', handler)} failed on '{event_type}'")
        return event

    async def _read_loop(self) -> None:
        try:
            async for event_type, payload in self._transport.frames():
                await self.feed(event_type, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Channel reader stopped")

"""
Agent dashboard: the filtered chat list, per-agent stats and one detail view.

The list keeps its ``last_message`` / ``message_count`` previews current from
``new-message`` broadcasts for every chat, not only the selected one. Each
message id is counted once per chat, so a redelivered broadcast does not
inflate the count. ``chat-updated`` broadcasts trigger a refetch of the list
and stats, and the refetched rows are merged with the live previews.
"""
import logging
from typing import Optional

from supportchat.api import SupportApi
from supportchat.channel import (
    EVENT_CHAT_UPDATED,
    EVENT_NEW_MESSAGE,
    ChatUpdatedEvent,
    EventChannel,
    NewMessageEvent,
)
from supportchat.db.models import AgentStats, Chat, ChatFilters, ChatPreview, canonical_id
from supportchat.errors import SupportChatError
from supportchat.session import ChatSession

logger = logging.getLogger(__name__)


class AgentDashboard:
    def __init__(self, api: SupportApi, channel: EventChannel, *,
                 filters: Optional[ChatFilters] = None, typing_timeout: Optional[float] = None) -> None:
        if not api.identity.is_agent:
            raise ValueError("AgentDashboard needs an agent identity")
        self.api = api
        self.channel = channel
        self.filters = filters or ChatFilters()
        self.stats: list[AgentStats] = []
        self.detail = ChatSession(api, channel, typing_timeout=typing_timeout)
        self._rows: dict[str, ChatPreview] = {}
        self._order: list[str] = []
        self._unsubscribers: list = []

    @property
    def chats(self) -> list[Chat]:
        return [self._rows[cid].chat for cid in self._order]

    def get(self, chat_id) -> Optional[Chat]:
        row = self._rows.get(canonical_id(chat_id))
        return row.chat if row else None

    async def start(self) -> None:
        """Connect the shared channel, subscribe and load the list and stats."""
        await self.channel.connect()
        if not self._unsubscribers:
            self._unsubscribers = [
                self.channel.on(EVENT_NEW_MESSAGE, self._on_new_message),
                self.channel.on(EVENT_CHAT_UPDATED, self._on_chat_updated),
            ]
        await self.refresh()

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.detail.close_view()

    async def set_filters(self, filters: ChatFilters) -> None:
        self.filters = filters
        await self.refresh_chats()

    # ─────────────────────────────────────────────
    # Fetching
    # ─────────────────────────────────────────────

    async def refresh(self) -> None:
        await self.refresh_chats()
        await self.refresh_stats()

    async def refresh_chats(self) -> None:
        chats = await self.api.list_chats(self.filters)
        rows = {}
        for chat in chats:
            previous = self._rows.get(chat.id)
            if previous is None:
                rows[chat.id] = ChatPreview(chat=chat)
                continue
            merged = chat
            if previous.chat.message_count > chat.message_count:
                # live broadcasts already counted messages this fetch has not seen yet
                merged = chat.evolve(message_count=previous.chat.message_count,
                                     last_message=previous.chat.last_message)
            rows[chat.id] = ChatPreview(chat=merged, counted_ids=previous.counted_ids)
        self._rows = rows
        self._order = [c.id for c in chats]

    async def refresh_stats(self) -> None:
        self.stats = await self.api.fetch_agent_stats()

    # ─────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────

    async def select_chat(self, chat_id) -> ChatSession:
        await self.detail.open_chat(chat_id)
        return self.detail

    async def claim(self, chat_id) -> bool:
        """Claim a chat from the list, opening it in the detail view first if needed."""
        cid = canonical_id(chat_id)
        if self.detail.chat_id != cid:
            await self.detail.open_chat(cid)
        try:
            return await self.detail.claim()
        finally:
            await self._refresh_quietly()

    # ─────────────────────────────────────────────
    # Push handlers
    # ─────────────────────────────────────────────

    def _on_new_message(self, event: NewMessageEvent) -> None:
        row = self._rows.get(event.chat_id)
        if row is None or event.id in row.counted_ids:
            return
        row.counted_ids.add(event.id)
        row.chat = row.chat.evolve(
            last_message=event.content if event.content is not None else row.chat.last_message,
            message_count=row.chat.message_count + 1,
        )

    async def _on_chat_updated(self, event: ChatUpdatedEvent) -> None:
        logger.debug(f"chat-updated for {event.chat_id}; refreshing list and stats")
        await self._refresh_quietly()

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except SupportChatError as e:
            logger.warning(f"Dashboard refresh failed: {e}")

"""
ChatSession: the live view of one chat at a time.

Wires the shared push channel, the REST fetcher and the per-chat components
(store, presence tracker, claim arbiter, lifecycle controller) together.
Switching to another chat leaves the previous room, drops the previous
chat's state and ignores any fetch that was still in flight for it.
"""
import asyncio
import logging
from typing import Optional

import aiosqlite

from supportchat.api import SupportApi
from supportchat.channel import (
    EVENT_ADMIN_STATUS,
    EVENT_CHAT_UPDATED,
    EVENT_NEW_MESSAGE,
    EVENT_TYPING,
    SIGNAL_TYPING,
    AdminStatusEvent,
    ChatUpdatedEvent,
    EventChannel,
    NewMessageEvent,
    TypingEvent,
)
from supportchat.claims import ClaimArbiter
from supportchat.db.models import STATUS_CLAIMED, Chat, Message, canonical_id
from supportchat.errors import SupportChatError
from supportchat.identity import Identity, adopt_guest_session
from supportchat.lifecycle import LifecycleController
from supportchat.presence import PresenceState, PresenceTracker
from supportchat.store import SessionStore

logger = logging.getLogger(__name__)


class ChatSession:
    def __init__(
        self,
        api: SupportApi,
        channel: EventChannel,
        *,
        profile_db: Optional[aiosqlite.Connection] = None,
        typing_timeout: Optional[float] = None,
    ) -> None:
        self.api = api
        self.channel = channel
        self.identity: Identity = api.identity
        self.profile_db = profile_db
        self.typing_timeout = typing_timeout

        self.store: Optional[SessionStore] = None
        self.presence: Optional[PresenceTracker] = None
        self.claims: Optional[ClaimArbiter] = None
        self.lifecycle: Optional[LifecycleController] = None

        self._generation = 0
        self._unsubscribers: list = []

    # ─────────────────────────────────────────────
    # View state
    # ─────────────────────────────────────────────

    @property
    def chat_id(self) -> Optional[str]:
        return self.store.chat_id if self.store is not None else None

    @property
    def chat(self) -> Optional[Chat]:
        return self.store.chat if self.store is not None else None

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.store.messages if self.store is not None else ()

    def presence_state(self) -> Optional[PresenceState]:
        return self.presence.state() if self.presence is not None else None

    # ─────────────────────────────────────────────
    # Opening / switching chats
    # ─────────────────────────────────────────────

    async def create_chat(self, category: str) -> Chat:
        """Start a new chat in ``category`` and open it."""
        chat_id, session_id = await self.api.create_chat(category)
        if self.identity.is_guest and session_id:
            if self.profile_db is not None:
                await adopt_guest_session(self.profile_db, self.identity, session_id)
            else:
                self.identity.session_id = session_id
        await self.open_chat(chat_id)
        if self.store.chat is None:
            # the list endpoint may lag behind creation; start from the known initial state
            self.store.update_chat_fields(category=category)
        return self.store.chat

    async def open_chat(self, chat_id) -> None:
        """Make ``chat_id`` the active chat and load its state."""
        cid = canonical_id(chat_id)
        if cid is None:
            raise ValueError("chat id is required")
        await self.channel.connect()
        await self._leave_current()

        self._generation += 1
        self.store = SessionStore(cid)
        self.presence = PresenceTracker(cid, typing_timeout=self.typing_timeout)
        self.claims = ClaimArbiter(self.api, self.store, self.identity, self._confirm)
        self.lifecycle = LifecycleController(
            self.api, self.channel, self.store, self.identity, self._confirm,
            on_merged=self.presence.observe_message,
        )
        self._subscribe()
        await self.channel.join(cid)
        logger.info(f"Opened chat {cid} as {self.identity.kind}")
        await self.reconcile()

    async def close_view(self) -> None:
        """Leave the active chat without opening another one."""
        await self._leave_current()
        self._generation += 1
        self.store = self.presence = self.claims = self.lifecycle = None

    async def _leave_current(self) -> None:
        # a failed leave propagates with the current view still subscribed
        if self.store is not None and self.channel.connected:
            await self.channel.leave(self.store.chat_id)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _subscribe(self) -> None:
        self._unsubscribers = [
            self.channel.on(EVENT_NEW_MESSAGE, self._on_new_message),
            self.channel.on(EVENT_CHAT_UPDATED, self._on_chat_updated),
            self.channel.on(EVENT_TYPING, self._on_typing),
            self.channel.on(EVENT_ADMIN_STATUS, self._on_admin_status),
        ]

    # ─────────────────────────────────────────────
    # Reconciliation
    # ─────────────────────────────────────────────

    async def reconcile(self) -> None:
        """Fetch the chat record and history and merge them into the store.

        A result that comes back after the view moved to another chat is
        discarded.
        """
        if self.store is None:
            return
        generation = self._generation
        cid = self.store.chat_id
        chat, messages = await asyncio.gather(self.api.fetch_chat(cid), self.api.fetch_messages(cid))
        if generation != self._generation or self.store is None or self.store.chat_id != cid:
            logger.debug(f"Discarding late fetch for chat {cid}")
            return

        inserted = self.store.replace_snapshot(chat, messages)
        if inserted:
            logger.debug(f"Chat {cid}: reconciliation added {len(inserted)} message(s)")
        self.presence.scan(self.store.messages)
        current = self.store.chat
        if current is not None:
            self.presence.observe_chat_agent(current.admin_name)
            if chat is not None and chat.status == STATUS_CLAIMED:
                await self.claims.observe_claimant(chat.claimant)

    async def _confirm(self) -> None:
        # the action already succeeded; a failed confirmation fetch only delays convergence
        try:
            await self.reconcile()
        except SupportChatError as e:
            logger.warning(f"Confirmation fetch for chat {self.chat_id} failed: {e}")

    # ─────────────────────────────────────────────
    # Push handlers
    # ─────────────────────────────────────────────

    def _on_new_message(self, event: NewMessageEvent) -> None:
        if self.store is None or event.chat_id != self.store.chat_id:
            return
        msg = event.to_message()
        if self.store.apply_message(msg):
            self.presence.observe_message(msg)

    async def _on_chat_updated(self, event: ChatUpdatedEvent) -> None:
        if self.store is None or event.chat_id != self.store.chat_id:
            return
        if event.status is not None and event.status != STATUS_CLAIMED:
            # statuses that need no claimant can be applied before the refetch
            self.store.update_chat_fields(status=event.status)
        try:
            await self.reconcile()
        except SupportChatError as e:
            logger.warning(f"Reconciling chat {event.chat_id} after chat-updated failed: {e}")

    def _on_typing(self, event: TypingEvent) -> None:
        if self.presence is None:
            return
        self.presence.observe_typing(event.chat_id, event.is_typing, event.sender_name)

    def _on_admin_status(self, event: AdminStatusEvent) -> None:
        if self.presence is None:
            return
        self.presence.observe_admin_status(event.chat_id, event.admin_name)

    # ─────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────

    def _require_open(self) -> None:
        if self.store is None:
            raise SupportChatError("No chat is open")

    async def send_message(self, content: Optional[str] = None, attachment_path=None) -> Optional[Message]:
        self._require_open()
        return await self.lifecycle.send_message(content, attachment_path)

    async def claim(self) -> bool:
        self._require_open()
        return await self.claims.request_claim()

    async def mark_solved(self) -> None:
        self._require_open()
        await self.lifecycle.mark_solved()

    async def mark_closed(self) -> None:
        self._require_open()
        await self.lifecycle.mark_closed()

    async def submit_feedback(self, rating: int, comment: Optional[str] = None) -> None:
        self._require_open()
        await self.lifecycle.submit_feedback(rating, comment)

    async def notify_typing(self, is_typing: bool) -> None:
        """Tell the other side of the active chat whether we are typing."""
        self._require_open()
        await self.channel.emit(SIGNAL_TYPING, {
            "chatId": self.store.chat_id,
            "isTyping": bool(is_typing),
            "senderName": self.identity.display_name,
        })

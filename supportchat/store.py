"""
Session store: the client-side authoritative view of one open chat.

Both the push channel and reconciliation fetches feed this store, and both go
through the same merge path keyed by message identity. Delivery order and
duplicate delivery therefore never change the resulting log: messages are
kept unique by id and sorted by (created_at, id).
"""
import bisect
import logging
from typing import Iterable, Optional

from supportchat.db.models import (
    STATUS_CLAIMED,
    STATUS_RANK,
    Chat,
    Message,
    TERMINAL_STATUSES,
    canonical_id,
)

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, chat_id) -> None:
        self.chat_id = canonical_id(chat_id)
        self._chat: Optional[Chat] = None
        self._messages: list[Message] = []
        self._index: dict[str, Message] = {}

    # ── read side ───────────────────────────────────────────────────────────

    @property
    def chat(self) -> Optional[Chat]:
        return self._chat

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def message_ids(self) -> list[str]:
        return [m.id for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id) -> bool:
        return canonical_id(message_id) in self._index

    # ── messages ────────────────────────────────────────────────────────────

    def apply_message(self, msg: Message) -> bool:
        """Insert ``msg`` unless a message with the same id is already known.

        Returns True when the log changed. Known messages are immutable: a
        second delivery with different content is ignored.
        """
        if msg.chat_id != self.chat_id:
            logger.debug(f"Store for chat {self.chat_id} ignoring message {msg.id} of chat {msg.chat_id}")
            return False
        if msg.id in self._index:
            logger.debug(f"Duplicate delivery of message {msg.id} in chat {self.chat_id}")
            return False
        bisect.insort(self._messages, msg, key=lambda m: m.order_key)
        self._index[msg.id] = msg
        return True

    def replace_snapshot(self, chat: Optional[Chat], messages: Iterable[Message]) -> list[Message]:
        """Merge a reconciliation result.

        The fetched log is unioned with what is already held, so messages that
        arrived by push after the fetch was issued survive. Returns the
        messages that were new to the store, in log order.
        """
        inserted = []
        for msg in messages:
            if msg.chat_id != self.chat_id or msg.id in self._index:
                continue
            self._index[msg.id] = msg
            inserted.append(msg)
        if inserted:
            self._messages = sorted(self._index.values(), key=lambda m: m.order_key)
            inserted.sort(key=lambda m: m.order_key)
        if chat is not None:
            self._merge_chat(chat)
        return inserted

    # ── chat attributes ─────────────────────────────────────────────────────

    def update_chat_fields(self, **partial) -> bool:
        """Merge a partial chat update; fields not given are left alone.

        Returns True when the snapshot changed. Raises ValueError when the
        result would break the claimant invariant or names an unknown field.
        """
        unknown = set(partial) - Chat.field_names()
        if unknown:
            raise ValueError(f"Unknown chat fields: {sorted(unknown)}")
        if "claimant" in partial:
            partial["claimant"] = canonical_id(partial["claimant"])
        current = self._chat or Chat(id=self.chat_id)
        status = partial.get("status", current.status)
        if status != STATUS_CLAIMED:
            partial["claimant"] = None
        elif partial.get("claimant", current.claimant) is None:
            raise ValueError(f"Chat {self.chat_id}: status 'claimed' needs a claimant")
        partial.pop("id", None)
        return self._merge_chat(current.evolve(**partial), partial_fields=set(partial))

    def _merge_chat(self, incoming: Chat, partial_fields: Optional[set] = None) -> bool:
        current = self._chat
        if current is None:
            self._chat = incoming
            return True
        if incoming.id != current.id:
            logger.debug(f"Store for chat {self.chat_id} ignoring snapshot of chat {incoming.id}")
            return False

        if not _status_transition_allowed(current, incoming):
            logger.debug(f"Chat {self.chat_id}: refusing stale status {incoming.status} over {current.status}")
            keep = {"status": current.status, "claimant": current.claimant}
            if current.status in TERMINAL_STATUSES and incoming.status in TERMINAL_STATUSES:
                keep["admin_name"] = current.admin_name
            incoming = incoming.evolve(**keep)

        if partial_fields is None:
            # full snapshot: the counters only move forward
            incoming = incoming.evolve(
                message_count=max(incoming.message_count, current.message_count),
                last_message=(incoming.last_message
                              if incoming.message_count >= current.message_count
                              else current.last_message),
            )
            for name in ("category", "user_name", "admin_name", "created_at", "user_id", "session_id"):
                if getattr(incoming, name) is None and getattr(current, name) is not None:
                    if name == "user_id" and incoming.session_id is not None:
                        continue
                    if name == "session_id" and incoming.user_id is not None:
                        continue
                    incoming = incoming.evolve(**{name: getattr(current, name)})

        if incoming == current:
            return False
        self._chat = incoming
        return True


def _status_transition_allowed(current: Chat, incoming: Chat) -> bool:
    if current.status in TERMINAL_STATUSES:
        return incoming.status == current.status
    return STATUS_RANK[incoming.status] >= STATUS_RANK[current.status]

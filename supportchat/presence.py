"""
Presence and typing signals for the open chat.

Presence is derived from evidence: a message written by an agent (or by one
of the configured system agent names), an ``admin-status`` hint, or an agent
name on the chat record. Once an agent has been seen the flag stays set for
the lifetime of the tracker; there is no way to observe an agent leaving.

Typing follows ``typing`` signals scoped to the tracked chat. A start signal
that is never followed by a stop signal expires after ``TYPING_TIMEOUT``
seconds; with a timeout of 0 it never expires.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from supportchat import config
from supportchat.db.models import SENDER_ADMIN, Message, canonical_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceState:
    agent_online: bool
    agent_name: Optional[str]
    is_typing: bool
    typing_name: Optional[str]


class PresenceTracker:
    def __init__(
        self,
        chat_id,
        *,
        typing_timeout: Optional[float] = None,
        system_agent_names: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.chat_id = canonical_id(chat_id)
        self.typing_timeout = config.TYPING_TIMEOUT if typing_timeout is None else typing_timeout
        self.system_agent_names = frozenset(
            config.SYSTEM_AGENT_NAMES if system_agent_names is None else system_agent_names
        )
        self._clock = clock
        self._agent_online = False
        self._agent_name: Optional[str] = None
        self._typing = False
        self._typing_name: Optional[str] = None
        self._typing_since: Optional[float] = None

    # ── presence ────────────────────────────────────────────────────────────

    @property
    def agent_online(self) -> bool:
        return self._agent_online

    @property
    def agent_name(self) -> Optional[str]:
        return self._agent_name

    def is_agent_message(self, msg: Message) -> bool:
        if not msg.sender_name:
            return False
        return msg.sender_type == SENDER_ADMIN or msg.sender_name in self.system_agent_names

    def scan(self, messages: Iterable[Message]) -> bool:
        """Look for the first agent-authored message in a loaded log.

        Once presence is known the scan changes nothing; the name then
        follows newly merged messages only.
        """
        if self._agent_online:
            return False
        for msg in messages:
            if self.is_agent_message(msg):
                return self.observe_message(msg)
        return False

    def observe_message(self, msg: Message) -> bool:
        """Record a newly merged message; returns True if presence changed.

        A later agent message updates the displayed name (the agent now
        talking), it never clears the flag.
        """
        if msg.chat_id != self.chat_id or not self.is_agent_message(msg):
            return False
        return self._mark_online(msg.sender_name)

    def observe_admin_status(self, chat_id, admin_name: Optional[str]) -> bool:
        """Apply an ``admin-status`` hint; it never overrides a name already shown."""
        if canonical_id(chat_id) != self.chat_id or not admin_name:
            return False
        if self._agent_online:
            return False
        return self._mark_online(admin_name)

    def observe_chat_agent(self, admin_name: Optional[str]) -> bool:
        """Use the agent named on the chat record as evidence when nothing else is known."""
        if not admin_name or self._agent_online:
            return False
        return self._mark_online(admin_name)

    def _mark_online(self, name: str) -> bool:
        changed = not self._agent_online or self._agent_name != name
        self._agent_online = True
        self._agent_name = name
        if changed:
            logger.debug(f"Chat {self.chat_id}: agent {name} online")
        return changed

    # ── typing ──────────────────────────────────────────────────────────────

    def observe_typing(self, chat_id, is_typing: bool, sender_name: Optional[str]) -> bool:
        """Apply a typing signal; signals for other chats are ignored."""
        if canonical_id(chat_id) != self.chat_id:
            return False
        if is_typing:
            self._typing = True
            self._typing_name = sender_name
            self._typing_since = self._clock()
        else:
            self._clear_typing()
        return True

    def _clear_typing(self) -> None:
        self._typing = False
        self._typing_name = None
        self._typing_since = None

    def _expire_typing(self) -> None:
        if not self._typing or self.typing_timeout <= 0:
            return
        if self._clock() - self._typing_since >= self.typing_timeout:
            logger.debug(f"Chat {self.chat_id}: typing indicator for {self._typing_name} expired")
            self._clear_typing()

    @property
    def is_typing(self) -> bool:
        self._expire_typing()
        return self._typing

    @property
    def typing_name(self) -> Optional[str]:
        self._expire_typing()
        return self._typing_name

    def state(self) -> PresenceState:
        self._expire_typing()
        return PresenceState(
            agent_online=self._agent_online,
            agent_name=self._agent_name,
            is_typing=self._typing,
            typing_name=self._typing_name,
        )

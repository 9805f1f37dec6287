"""
Chat lifecycle: gating of mutating actions and the solve/close transitions.

Everything that can be rejected locally is rejected before a request is
sent. Solve and close are two-step (REST, then a status broadcast to peers on
the push channel); local state only moves once both steps succeeded.
"""
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from supportchat.api import SupportApi
from supportchat.attachments import prepare_upload
from supportchat.channel import SIGNAL_UPDATE_STATUS, EventChannel
from supportchat.db.models import (
    STATUS_CLAIMED,
    STATUS_CLOSED,
    STATUS_SOLVED,
    Feedback,
    Message,
)
from supportchat.errors import ActionNotPermitted, ChatValidationError
from supportchat.identity import Identity
from supportchat.store import SessionStore

logger = logging.getLogger(__name__)

Reconcile = Callable[[], Awaitable[None]]

RATING_MIN = 1
RATING_MAX = 5


class LifecycleController:
    def __init__(
        self,
        api: SupportApi,
        channel: EventChannel,
        store: SessionStore,
        identity: Identity,
        reconcile: Reconcile,
        on_merged: Optional[Callable[[Message], None]] = None,
    ) -> None:
        self.api = api
        self.channel = channel
        self.store = store
        self.identity = identity
        self._reconcile = reconcile
        self._on_merged = on_merged

    # ─────────────────────────────────────────────
    # Gating
    # ─────────────────────────────────────────────

    @property
    def status(self) -> Optional[str]:
        return self.store.chat.status if self.store.chat else None

    @property
    def is_claimant(self) -> bool:
        chat = self.store.chat
        return (
            chat is not None
            and chat.status == STATUS_CLAIMED
            and chat.claimant is not None
            and chat.claimant == self.identity.principal_id
        )

    @property
    def can_compose(self) -> bool:
        chat = self.store.chat
        if chat is None or chat.is_terminal:
            return False
        if self.identity.is_agent:
            return self.is_claimant
        return True

    @property
    def can_resolve(self) -> bool:
        return self.identity.is_agent and self.is_claimant

    @property
    def feedback_available(self) -> bool:
        chat = self.store.chat
        return chat is not None and chat.is_terminal and not self.identity.is_agent

    def _require_compose(self) -> None:
        if self.can_compose:
            return
        chat = self.store.chat
        if chat is not None and not chat.is_terminal and self.identity.is_agent:
            raise ActionNotPermitted("send", chat.status, "only the claiming agent can reply")
        raise ActionNotPermitted("send", self.status)

    def _require_resolve(self, action: str) -> None:
        chat = self.store.chat
        if chat is None or chat.is_terminal:
            raise ActionNotPermitted(action, self.status)
        if not self.can_resolve:
            raise ActionNotPermitted(action, chat.status, "only the current claimant can do this")

    # ─────────────────────────────────────────────
    # Messages
    # ─────────────────────────────────────────────

    async def send_message(self, content: Optional[str] = None,
                           attachment_path: Optional[str | Path] = None) -> Optional[Message]:
        """Validate and submit a message.

        If the backend echoes the stored message it is merged immediately;
        the later ``new-message`` broadcast of the same id is then a no-op.
        """
        text = (content or "").strip()
        if not text and attachment_path is None:
            raise ChatValidationError("Message needs content or an attachment")
        self._require_compose()
        upload = prepare_upload(attachment_path) if attachment_path is not None else None

        msg = await self.api.send_message(self.store.chat_id, text or None, upload)
        if msg is not None and self.store.apply_message(msg) and self._on_merged:
            self._on_merged(msg)
        return msg

    # ─────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────

    async def mark_solved(self) -> None:
        await self._transition("solve", STATUS_SOLVED, self.api.solve_chat)

    async def mark_closed(self) -> None:
        await self._transition("close", STATUS_CLOSED, self.api.close_chat)

    async def _transition(self, action: str, status: str, call) -> None:
        self._require_resolve(action)
        cid = self.store.chat_id
        await call(cid)
        await self.channel.emit(SIGNAL_UPDATE_STATUS, {"chatId": cid, "status": status})
        self.store.update_chat_fields(status=status)
        logger.info(f"Chat {cid} marked {status} by {self.identity.principal_id}")
        await self._reconcile()

    # ─────────────────────────────────────────────
    # Feedback
    # ─────────────────────────────────────────────

    async def submit_feedback(self, rating: int, comment: Optional[str] = None) -> None:
        if not self.feedback_available:
            raise ActionNotPermitted("feedback", self.status)
        if isinstance(rating, bool) or not isinstance(rating, int) or not RATING_MIN <= rating <= RATING_MAX:
            raise ChatValidationError(f"Rating must be an integer from {RATING_MIN} to {RATING_MAX}")
        feedback = Feedback(
            chat_id=self.store.chat_id,
            rating=rating,
            comment=(comment or "").strip() or None,
            session_id=self.identity.session_id if self.identity.is_guest else None,
        )
        await self.api.submit_feedback(feedback)
        logger.info(f"Feedback submitted for chat {feedback.chat_id}: {rating}/5")

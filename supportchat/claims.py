"""
Claim arbitration.

The backend alone decides who wins a claim. Locally the arbiter applies an
optimistic claimed state only after the backend accepted the request, and
resynchronizes whenever the backend refuses (any non-2xx answer) or a
broadcast names a different claimant.
"""
import logging
from typing import Awaitable, Callable, Optional

from supportchat.api import SupportApi
from supportchat.db.models import STATUS_CLAIMED, STATUS_OPEN, canonical_id
from supportchat.errors import ActionNotPermitted, ApiError
from supportchat.identity import Identity
from supportchat.store import SessionStore

logger = logging.getLogger(__name__)

Reconcile = Callable[[], Awaitable[None]]


class ClaimArbiter:
    def __init__(self, api: SupportApi, store: SessionStore, identity: Identity, reconcile: Reconcile) -> None:
        self.api = api
        self.store = store
        self.identity = identity
        self._reconcile = reconcile
        self._optimistic_claimant: Optional[str] = None

    @property
    def pending_optimistic(self) -> bool:
        return self._optimistic_claimant is not None

    async def request_claim(self, chat_id=None) -> bool:
        """Claim the chat for this agent.

        Returns True once the backend accepted the claim. Any refusal
        (ApiError, AuthorizationError included) leaves the local state
        untouched apart from the reconciliation it triggers, then propagates
        to the caller. A TransportError propagates without a resync.
        """
        cid = canonical_id(chat_id) if chat_id is not None else self.store.chat_id
        if cid != self.store.chat_id:
            raise ValueError(f"Arbiter for chat {self.store.chat_id} cannot claim chat {cid}")
        if not self.identity.is_agent:
            raise ActionNotPermitted("claim", self._status(), "only agents can claim chats")
        chat = self.store.chat
        if chat is not None and chat.status != STATUS_OPEN:
            raise ActionNotPermitted("claim", chat.status)

        try:
            await self.api.claim_chat(cid)
        except ApiError as e:
            logger.info(f"Claim of chat {cid} refused: {e.detail or e.status_code}; reconciling")
            await self._reconcile()
            raise

        self._optimistic_claimant = self.identity.principal_id
        self.store.update_chat_fields(
            status=STATUS_CLAIMED,
            claimant=self.identity.principal_id,
            admin_name=self.identity.display_name,
        )
        logger.info(f"Chat {cid} claimed by {self.identity.principal_id}")
        await self._reconcile()
        return True

    async def observe_claimant(self, claimant) -> None:
        """Called with the claimant reported by a broadcast or fetch.

        A claimant that differs from the optimistic one means the local view
        lost a race it did not see; resync from the backend.
        """
        reported = canonical_id(claimant)
        if self._optimistic_claimant is None:
            return
        if reported == self._optimistic_claimant:
            self._optimistic_claimant = None
            return
        logger.warning(
            f"Chat {self.store.chat_id}: reported claimant {reported} differs from optimistic "
            f"{self._optimistic_claimant}; reconciling"
        )
        self._optimistic_claimant = None
        await self._reconcile()

    def _status(self) -> Optional[str]:
        return self.store.chat.status if self.store.chat else None

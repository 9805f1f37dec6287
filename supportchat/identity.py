"""
Identity resolution: who is calling the backend.

An identity is either an authenticated principal (a user or a support agent
holding a bearer token) or a guest scoped by a durable session token kept in
the local profile database.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from supportchat.db import crud
from supportchat.db.models import canonical_id

logger = logging.getLogger(__name__)

KIND_USER = "user"
KIND_AGENT = "agent"
KIND_GUEST = "guest"


@dataclass
class Identity:
    kind: str                      # user | agent | guest
    principal_id: Optional[str]    # user/agent id; None for guests
    display_name: Optional[str]
    token: Optional[str] = None    # bearer token for authenticated principals
    session_id: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.kind == KIND_GUEST

    @property
    def is_agent(self) -> bool:
        return self.kind == KIND_AGENT

    def auth_headers(self) -> dict:
        if self.token and not self.is_guest:
            return {"Authorization": f"Bearer {self.token}"}
        return {}


async def resolve_identity(
    db: Optional[aiosqlite.Connection] = None,
    *,
    token: Optional[str] = None,
    principal_id=None,
    display_name: Optional[str] = None,
    role: Optional[str] = None,
) -> Identity:
    """Build the calling identity.

    With a token the caller is authenticated; ``role="agent"`` (or "admin")
    makes it a support agent, anything else an end user. Without a token the
    caller is a guest and ``db`` must be given so the profile's durable guest
    token can be loaded or created.
    """
    if token:
        pid = canonical_id(principal_id)
        if pid is None:
            raise ValueError("Authenticated identities need a principal id")
        kind = KIND_AGENT if role in ("agent", "admin", "superadmin") else KIND_USER
        logger.debug(f"Resolved {kind} identity {pid}")
        return Identity(kind=kind, principal_id=pid, display_name=display_name, token=token)

    if db is None:
        raise ValueError("Guest identities need the profile database")
    session_id = await crud.guest_session_get_or_create(db)
    return Identity(kind=KIND_GUEST, principal_id=None, display_name=display_name or "Guest",
                    session_id=session_id)


async def adopt_guest_session(db: aiosqlite.Connection, identity: Identity, session_id: str) -> None:
    """Switch a guest identity to the token the backend issued and persist it."""
    if not identity.is_guest:
        raise ValueError("Only guest identities carry a session token")
    if session_id == identity.session_id:
        return
    await crud.guest_session_save(db, session_id)
    identity.session_id = session_id

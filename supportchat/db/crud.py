"""
CRUD operations on the local profile database.
All functions are async and receive the aiosqlite connection from the caller.
"""
import random
import string
import time
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

logger = logging.getLogger(__name__)

GUEST_SESSION_KEY = "guest_session_id"

_BASE36 = string.digits + string.ascii_lowercase


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_guest_session_id() -> str:
    """Return a fresh opaque guest token: ``guest_<epoch-ms>_<9 base36 chars>``."""
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"guest_{int(time.time() * 1000)}_{suffix}"


# ─────────────────────────────────────────────
# Generic profile values
# ─────────────────────────────────────────────

async def profile_get(db: aiosqlite.Connection, key: str) -> Optional[str]:
    async with db.execute("SELECT value FROM profile WHERE key = ?", (key,)) as cur:
        row = await cur.fetchone()
    return row["value"] if row else None


async def profile_set(db: aiosqlite.Connection, key: str, value: str) -> None:
    await db.execute(
        "INSERT INTO profile (key, value, updated_at) VALUES (?, ?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
        (key, value, _now()),
    )
    await db.commit()


async def profile_delete(db: aiosqlite.Connection, key: str) -> bool:
    async with db.execute("DELETE FROM profile WHERE key = ?", (key,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


# ─────────────────────────────────────────────
# Guest session token
# ─────────────────────────────────────────────

async def guest_session_get(db: aiosqlite.Connection) -> Optional[str]:
    return await profile_get(db, GUEST_SESSION_KEY)


async def guest_session_save(db: aiosqlite.Connection, session_id: str) -> None:
    """Persist the token, e.g. the one the backend issued on guest chat creation."""
    if not session_id:
        raise ValueError("Guest session id must be non-empty")
    previous = await guest_session_get(db)
    await profile_set(db, GUEST_SESSION_KEY, session_id)
    if previous and previous != session_id:
        logger.info(f"Guest session token replaced: {previous} -> {session_id}")


async def guest_session_get_or_create(db: aiosqlite.Connection) -> str:
    """Return the profile's guest token, generating and persisting it once."""
    existing = await guest_session_get(db)
    if existing:
        return existing
    session_id = generate_guest_session_id()
    await profile_set(db, GUEST_SESSION_KEY, session_id)
    logger.info(f"Guest session created: {session_id}")
    return session_id


async def guest_session_clear(db: aiosqlite.Connection) -> bool:
    return await profile_delete(db, GUEST_SESSION_KEY)

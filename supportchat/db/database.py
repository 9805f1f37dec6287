"""
Local profile database: connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access. The profile outlives
the process so a guest keeps the same session token across restarts.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from supportchat.config import PROFILE_DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection per process)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db(path: str | None = None) -> aiosqlite.Connection:
    """Return the shared profile connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                db_path = path or PROFILE_DB_PATH
                if db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(db_path)
                _db.row_factory = aiosqlite.Row
                await init_schema(_db)
                logger.info(f"Profile database initialized at {db_path}")
    return _db


async def close_db() -> None:
    """Gracefully close the profile connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Profile database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Profile: small key/value store scoped to this client profile
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS profile (
            key         TEXT PRIMARY KEY,
            value       TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );
    """)
    await db.commit()
    logger.debug("Profile schema initialized.")

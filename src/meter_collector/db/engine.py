"""SQLite database engine with WAL mode for concurrent reads."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from meter_collector.db.migrations import run_migrations

logger = logging.getLogger(__name__)


async def check_integrity(db: aiosqlite.Connection) -> bool:
    """Run PRAGMA integrity_check and return True if the database is healthy."""
    async with db.execute("PRAGMA integrity_check") as cursor:
        rows = await cursor.fetchall()
    if len(rows) == 1 and str(rows[0][0]).lower() == "ok":
        return True
    problems = [str(r[0]) for r in rows[:10]]
    logger.error("Database integrity check failed: %s", "; ".join(problems))
    return False


async def init_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open the database with WAL mode and run migrations.

    ``":memory:"`` opens a private in-memory database.
    """
    if str(db_path) != ":memory:":
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(str(db_path))
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA synchronous=NORMAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await db.execute("PRAGMA busy_timeout=5000")
    db.row_factory = aiosqlite.Row

    if not await check_integrity(db):
        await db.close()
        raise RuntimeError(f"Database at {db_path} failed its integrity check")

    await run_migrations(db)
    logger.info("Database initialised at %s (WAL mode)", db_path)
    return db


async def checkpoint_wal(db: aiosqlite.Connection) -> None:
    """Checkpoint the WAL file to keep it from growing unbounded."""
    try:
        await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        logger.debug("WAL checkpoint completed")
    except aiosqlite.Error:
        logger.warning("WAL checkpoint failed", exc_info=True)


async def close_db(db: aiosqlite.Connection) -> None:
    """Checkpoint and close the database connection."""
    await checkpoint_wal(db)
    await db.close()
    logger.info("Database connection closed")

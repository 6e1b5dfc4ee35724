"""SQLite fingerprint cache setup and connection management."""

import aiosqlite
from pathlib import Path
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from app.config import Settings, get_settings

SCHEMA = """
-- Fingerprint cache: one digest per (path, size, mtime) triple
CREATE TABLE IF NOT EXISTS fingerprints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL,
    algorithm TEXT NOT NULL CHECK (algorithm IN ('full_sha256', 'quick_sha256')),
    digest TEXT NOT NULL,
    computed_at TEXT NOT NULL,  -- ISO timestamp
    UNIQUE(path)
);

CREATE INDEX IF NOT EXISTS idx_fingerprints_digest ON fingerprints(digest);
"""

_initialized: set[Path] = set()


async def init_db(db_path: Path) -> None:
    """Initialize the database with schema."""
    async with aiosqlite.connect(db_path) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    _initialized.add(db_path)


@asynccontextmanager
async def get_db(settings: Settings | None = None) -> AsyncGenerator[aiosqlite.Connection, None]:
    """Get a database connection, creating the schema on first use."""
    settings = settings or get_settings()
    db_path = settings.get_db_path()
    if db_path not in _initialized:
        await init_db(db_path)

    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        yield db


async def startup_db(settings: Settings | None = None) -> None:
    """Initialize database on application startup."""
    settings = settings or get_settings()
    db_path = settings.get_db_path()
    await init_db(db_path)

    # Enable WAL mode for better concurrency
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL;")
        await db.execute("PRAGMA synchronous=NORMAL;")


async def shutdown_db(settings: Settings | None = None) -> None:
    """Cleanup database on shutdown."""
    settings = settings or get_settings()
    db_path = settings.get_db_path()
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA optimize;")

"""SHA-256 fingerprinting service with caching."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from datetime import datetime, timezone
from typing import Callable
from concurrent.futures import ThreadPoolExecutor

import aiosqlite

from app.config import Settings, get_settings
from app.database import get_db
from app.services.models import FileFingerprint, FingerprintAlgorithm

logger = logging.getLogger(__name__)

# Thread pool for CPU-bound hashing
_hash_executor: ThreadPoolExecutor | None = None


def get_hash_executor() -> ThreadPoolExecutor:
    """Get or create the hash thread pool."""
    global _hash_executor
    if _hash_executor is None:
        settings = get_settings()
        _hash_executor = ThreadPoolExecutor(
            max_workers=settings.hash_workers,
            thread_name_prefix="hasher"
        )
    return _hash_executor


def compute_hash_sync(
    filepath: Path,
    chunk_size: int = 1024 * 1024,
    progress_callback: Callable[[int], None] | None = None,
) -> str:
    """
    Compute the SHA-256 of a whole file synchronously.

    Args:
        filepath: Path to the file
        chunk_size: Bytes read per iteration
        progress_callback: Optional callback(bytes_read) for progress

    Returns:
        Lowercase hex digest
    """
    hasher = hashlib.sha256()
    bytes_read = 0

    with open(filepath, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
            bytes_read += len(chunk)
            if progress_callback:
                progress_callback(bytes_read)

    return hasher.hexdigest()


def compute_quick_hash_sync(filepath: Path, window: int = 256 * 1024) -> str:
    """
    Compute the SHA-256 of the first ``window`` bytes followed by the last ``window`` bytes.

    The two windows overlap on files shorter than ``2 * window``; they are
    still concatenated as-is.
    """
    hasher = hashlib.sha256()

    with open(filepath, "rb") as f:
        head = f.read(window)

        f.seek(0, 2)
        size = f.tell()
        f.seek(max(0, size - window))
        tail = f.read(window)

    hasher.update(head)
    hasher.update(tail)
    return hasher.hexdigest()


def _quick_fingerprint(filepath: Path, size: int, window: int) -> FileFingerprint:
    try:
        digest = compute_quick_hash_sync(filepath, window)
    except (OSError, MemoryError, ValueError) as exc:
        logger.error("Quick hash failed for %s: %s", filepath, exc)
        return FileFingerprint.unavailable(size)
    return FileFingerprint(FingerprintAlgorithm.QUICK_SHA256, digest, size)


def fingerprint_sync(filepath: Path, settings: Settings | None = None) -> FileFingerprint:
    """
    Fingerprint a file, choosing full or quick hashing by size.

    Never raises: a failed full hash degrades to the quick hash, and a failed
    quick hash yields an UNAVAILABLE fingerprint.
    """
    settings = settings or get_settings()
    try:
        size = filepath.stat().st_size
    except OSError as exc:
        logger.warning("Cannot stat %s for hashing: %s", filepath, exc)
        return FileFingerprint.unavailable()

    if size > settings.full_hash_limit_bytes:
        return _quick_fingerprint(filepath, size, settings.quick_hash_window_bytes)

    try:
        digest = compute_hash_sync(filepath, settings.hash_chunk_bytes)
    except (OSError, MemoryError, ValueError) as exc:
        logger.warning("Full hash failed for %s, falling back to quick hash: %s", filepath, exc)
        return _quick_fingerprint(filepath, size, settings.quick_hash_window_bytes)
    return FileFingerprint(FingerprintAlgorithm.FULL_SHA256, digest, size)


async def fingerprint(filepath: Path, settings: Settings | None = None) -> FileFingerprint:
    """Fingerprint a file on the hash thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        get_hash_executor(),
        fingerprint_sync,
        filepath,
        settings,
    )


class HasherService:
    """Service for computing and caching file fingerprints."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    async def _cached(self, key: str, stat: os.stat_result) -> FileFingerprint | None:
        async with get_db(self.settings) as db:
            cursor = await db.execute(
                """
                SELECT algorithm, digest FROM fingerprints
                WHERE path = ? AND size = ? AND mtime_ns = ?
                """,
                (key, stat.st_size, stat.st_mtime_ns)
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return FileFingerprint(
            FingerprintAlgorithm(row["algorithm"]),
            row["digest"],
            stat.st_size,
        )

    async def _store(self, key: str, stat: os.stat_result, result: FileFingerprint) -> None:
        now = datetime.now(timezone.utc).isoformat()
        async with get_db(self.settings) as db:
            await db.execute(
                """
                INSERT INTO fingerprints (path, size, mtime_ns, algorithm, digest, computed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    size = excluded.size,
                    mtime_ns = excluded.mtime_ns,
                    algorithm = excluded.algorithm,
                    digest = excluded.digest,
                    computed_at = excluded.computed_at
                """,
                (key, stat.st_size, stat.st_mtime_ns, result.algorithm.value, result.digest_hex, now)
            )
            await db.commit()

    async def get_fingerprint(self, filepath: Path, force: bool = False) -> FileFingerprint:
        """
        Get the fingerprint for a file, computing it if the cache has none.

        The cache key is (path, size, mtime_ns); touching the file invalidates it.
        A cache that cannot be opened or written is logged and bypassed.
        """
        filepath = Path(filepath)
        if not self.settings.fingerprint_cache_enabled:
            return await fingerprint(filepath, self.settings)

        try:
            stat = filepath.stat()
            key = str(filepath.resolve())
        except (OSError, RuntimeError):
            return FileFingerprint.unavailable()

        if not force:
            try:
                cached = await self._cached(key, stat)
            except (OSError, aiosqlite.Error) as exc:
                logger.warning("Fingerprint cache unavailable, hashing %s directly: %s", filepath, exc)
                return await fingerprint(filepath, self.settings)
            if cached is not None:
                return cached

        result = await fingerprint(filepath, self.settings)
        if result.algorithm == FingerprintAlgorithm.UNAVAILABLE:
            return result

        try:
            await self._store(key, stat, result)
        except (OSError, aiosqlite.Error) as exc:
            logger.warning("Could not cache fingerprint for %s: %s", filepath, exc)
        return result

"""SQLite-based token storage and rendered image cache."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from ..metrics import timed
from .base import (
    BACKFILL_BATCH_SIZE,
    CacheParams,
    CompletedUpload,
    PendingUpload,
    StoreError,
    TokenStore,
    WriteOutcome,
)
from .cleanup import SampledCleanup
from .migrations import apply_migrations, load_migrations
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

# Queries
INSERT_TOKEN = "INSERT INTO tokens (id, image_id, valid_until, used) VALUES (?, ?, ?, 0)"
PURGE_EXPIRED_TOKEN = "DELETE FROM tokens WHERE image_id = ? AND used = 0 AND valid_until < ?"
CONSUME_TOKEN = (
    "UPDATE tokens SET used = 1 "
    "WHERE id = ? AND image_id = ? AND valid_until >= ? AND used = 0"
)
MARK_AS_COMPLETED = (
    "UPDATE tokens SET uploaded_at = ? "
    "WHERE id = ? AND image_id = ? AND valid_until >= ? AND used = 1"
)
DELETE_INCOMPLETE_TOKENS = "DELETE FROM tokens WHERE used = 1 AND uploaded_at IS NULL AND image_id = ?"
DELETE_OLD_TOKENS = "DELETE FROM tokens WHERE valid_until < ? AND used = 0"
SELECT_COMPLETED = (
    "SELECT image_id, uploaded_at FROM tokens "
    "WHERE uploaded_at IS NOT NULL AND uploaded_at > ? AND used = 1 "
    "ORDER BY uploaded_at"
)
SELECT_EMPTY_UPLOADED_AT = (
    "SELECT id, image_id FROM tokens "
    "WHERE uploaded_at IS NULL AND used = 1 AND id > ? ORDER BY id LIMIT ?"
)
SET_UPLOADED_AT_IF_EMPTY = (
    "UPDATE tokens SET uploaded_at = ? "
    "WHERE image_id = ? AND uploaded_at IS NULL AND used = 1"
)
INSERT_IMAGE = (
    "INSERT INTO images (id, x, y, fit, file_type, url, blur, quality, rendered_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
)
# Absent parameters are folded exactly as in the images_render_key index
SELECT_IMAGE = (
    "SELECT url FROM images "
    "WHERE id = ? AND coalesce(x, -1) = coalesce(?, -1) AND coalesce(y, -1) = coalesce(?, -1) "
    "AND coalesce(fit, '') = coalesce(?, '') AND file_type = ? AND blur = ? "
    "AND coalesce(quality, -1) = coalesce(?, -1) LIMIT 1"
)
INSERT_APP_MIGRATION = (
    "INSERT INTO appchangelog (name, created_at) VALUES (?, ?) ON CONFLICT(name) DO NOTHING"
)
SELECT_NEXT_APP_MIGRATION = (
    "SELECT name FROM appchangelog WHERE completed_at IS NULL "
    "ORDER BY created_at ASC, name ASC LIMIT 1"
)
MARK_APP_MIGRATION_COMPLETED = (
    "UPDATE appchangelog SET completed_at = ? WHERE completed_at IS NULL AND name = ?"
)

# Faults handled at the store boundary
DB_ERRORS = (aiosqlite.Error, StoreError)

DEFAULT_TOKEN_TTL = timedelta(minutes=15)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Format a timestamp so that text comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def is_unique_violation(error: aiosqlite.IntegrityError) -> bool:
    return getattr(error, "sqlite_errorname", None) == "SQLITE_CONSTRAINT_UNIQUE"


def _cache_key(params: CacheParams) -> Tuple[Any, ...]:
    return (
        params.name,
        params.width,
        params.height,
        params.fit,
        params.mime,
        int(bool(params.blur)),
        params.quality,
    )


class SQLiteTokenStore(TokenStore):
    """SQLite implementation of token storage and the image cache."""

    def __init__(
        self,
        db_path: str,
        pool_size: int = 5,
        busy_timeout: float = 5.0,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        cleanup: Optional[SampledCleanup] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize SQLite token store.

        Args:
            db_path: Path to SQLite database file
            pool_size: Maximum number of pooled connections
            busy_timeout: Seconds a statement waits on a locked database
            token_ttl: How long a new token stays valid
            cleanup: Policy deciding when token creation triggers cleanup
            clock: Source of the current time
        """
        self.db_path = db_path
        self.token_ttl = token_ttl
        self.cleanup = cleanup if cleanup is not None else SampledCleanup()
        self._clock = clock
        self._pool = ConnectionPool(db_path, size=pool_size, busy_timeout=busy_timeout)

    def _now(self) -> str:
        return to_db_time(self._clock())

    async def _write(self, *statements: Tuple[str, Sequence[Any]]) -> int:
        """Run statements in one transaction.

        Returns:
            Row count of the last statement
        """
        async with self._pool.acquire() as conn:
            rowcount = 0
            for sql, params in statements:
                cursor = await conn.execute(sql, params)
                rowcount = cursor.rowcount
                await cursor.close()
            await conn.commit()
            return rowcount

    async def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self._pool.acquire() as conn:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _insert_unique(self, *statements: Tuple[str, Sequence[Any]]) -> WriteOutcome:
        try:
            await self._write(*statements)
        except aiosqlite.IntegrityError as e:
            if is_unique_violation(e):
                return WriteOutcome.CONFLICT
            raise
        return WriteOutcome.CREATED

    async def open(self) -> None:
        """Open the pool by checking out a first connection."""
        async with self._pool.acquire():
            pass

    async def close(self) -> None:
        """Close database connections."""
        with timed("close"):
            await self._pool.close()

    async def migrate(self) -> List[str]:
        """Apply pending schema migrations."""
        with timed("migrate"):
            async with self._pool.acquire() as conn:
                applied = await apply_migrations(conn, load_migrations())
        logger.info("Database migrated to newest version")
        return applied

    async def is_db_alive(self) -> bool:
        """Check that a test query returns a row."""
        with timed("is_db_alive"):
            try:
                rows = await self._fetch("SELECT 1")
            except DB_ERRORS:
                return False
            return len(rows) == 1

    def stats(self) -> Dict[str, float]:
        """Report connection pool gauges."""
        return self._pool.stats()

    async def create_token(self, image_id: str, token: str) -> Optional[str]:
        """Persist a new unused token, then sample the cleanup policy."""
        created = None
        with timed("create_token"):
            now = self._clock()
            try:
                outcome = await self._insert_unique(
                    (PURGE_EXPIRED_TOKEN, (image_id, to_db_time(now))),
                    (INSERT_TOKEN, (token, image_id, to_db_time(now + self.token_ttl))),
                )
            except DB_ERRORS as e:
                logger.error("Failed to create token for image '%s': %s", image_id, e)
            else:
                if outcome is WriteOutcome.CREATED:
                    created = token
                else:
                    # A client re-requested a previously requested image_id token
                    logger.warning(
                        "Two image uploading requests for token raced to be saved in the "
                        "database. Denying this one '%s'.",
                        image_id,
                    )

        if self.cleanup.should_run():
            logger.info("Running token database cleanup")
            await self.cleanup_tokens()

        return created

    async def consume_token(self, token: str, image_id: str) -> bool:
        """Atomically mark an unexpired, unused token as used."""
        with timed("consume_token"):
            try:
                changed = await self._write((CONSUME_TOKEN, (token, image_id, self._now())))
            except DB_ERRORS as e:
                logger.error("Failed to consume token for image '%s': %s", image_id, e)
                return False
            return changed == 1

    async def mark_upload_as_completed(self, token: str, image_id: str) -> bool:
        """Record the upload time of an unexpired, consumed token."""
        with timed("mark_upload_as_completed"):
            now = self._now()
            try:
                changed = await self._write((MARK_AS_COMPLETED, (now, token, image_id, now)))
            except DB_ERRORS as e:
                logger.error("Failed to mark upload completed for image '%s': %s", image_id, e)
                return False
            return changed == 1

    async def delete_token_for_image_id(self, image_id: str) -> None:
        """Delete consumed tokens of an image whose upload never completed."""
        with timed("delete_token_for_image_id"):
            try:
                await self._write((DELETE_INCOMPLETE_TOKENS, (image_id,)))
            except DB_ERRORS as e:
                logger.error("Failed to delete tokens for image '%s': %s", image_id, e)

    async def cleanup_tokens(self) -> int:
        """Delete expired tokens that were never used."""
        with timed("cleanup_tokens"):
            try:
                removed = await self._write((DELETE_OLD_TOKENS, (self._now(),)))
            except DB_ERRORS as e:
                logger.error("Encountered error %s when cleaning up tokens", e)
                return 0
        logger.info("Cleaned %d tokens from the db", removed)
        return removed

    async def get_from_cache(self, params: CacheParams) -> Optional[str]:
        """Look up the URL of a previously rendered image."""
        with timed("get_from_cache"):
            try:
                rows = await self._fetch(SELECT_IMAGE, _cache_key(params))
            except DB_ERRORS as e:
                logger.error("Failed to read image cache for '%s': %s", params.name, e)
                return None
        if rows:
            return rows[0]["url"]
        return None

    async def add_to_cache(
        self, params: CacheParams, url: str, rendered_at: datetime
    ) -> bool:
        """Store the URL of a rendered image, tolerating a concurrent writer."""
        name, width, height, fit, mime, blur, quality = _cache_key(params)
        row = (name, width, height, fit, mime, url, blur, quality, to_db_time(rendered_at))
        with timed("add_to_cache"):
            try:
                outcome = await self._insert_unique((INSERT_IMAGE, row))
            except DB_ERRORS as e:
                logger.error("Failed to add '%s' to image cache: %s", name, e)
                return False
        if outcome is WriteOutcome.CONFLICT:
            # Two renders of the same image raced; one row was persisted
            logger.debug("Two images raced to be saved in the database. Persisted just one.")
        return True

    async def images_completed_after(self, threshold: datetime) -> List[CompletedUpload]:
        """List uploads completed after a point in time, oldest first."""
        with timed("images_completed_after"):
            try:
                rows = await self._fetch(SELECT_COMPLETED, (to_db_time(threshold),))
            except DB_ERRORS as e:
                logger.error("Failed to list completed uploads: %s", e)
                return []
        return [
            CompletedUpload(image_id=row["image_id"], uploaded_at=from_db_time(row["uploaded_at"]))
            for row in rows
        ]

    async def get_tokens_without_uploaded_at(self, after: str = "") -> List[PendingUpload]:
        """List up to BACKFILL_BATCH_SIZE consumed tokens with no upload time, by token."""
        with timed("get_tokens_without_uploaded_at"):
            try:
                rows = await self._fetch(SELECT_EMPTY_UPLOADED_AT, (after, BACKFILL_BATCH_SIZE))
            except DB_ERRORS as e:
                logger.error("Failed to list tokens without uploaded_at: %s", e)
                return []
        return [PendingUpload(token=row["id"], image_id=row["image_id"]) for row in rows]

    async def set_uploaded_at(self, image_id: str, value: datetime) -> int:
        """Set the upload time of an image's consumed tokens if still unset."""
        with timed("set_uploaded_at"):
            try:
                return await self._write(
                    (SET_UPLOADED_AT_IF_EMPTY, (to_db_time(value), image_id))
                )
            except DB_ERRORS as e:
                logger.error("Failed to set uploaded_at for image '%s': %s", image_id, e)
                return 0

    async def register_app_migration(self, name: str) -> bool:
        """Add an application migration to the ledger if it is unknown."""
        with timed("register_app_migration"):
            try:
                return await self._write((INSERT_APP_MIGRATION, (name, self._now()))) == 1
            except DB_ERRORS as e:
                logger.error("Failed to register app migration '%s': %s", name, e)
                return False

    async def next_pending_app_migration(self) -> Optional[str]:
        """Return the oldest application migration not yet completed."""
        with timed("next_pending_app_migration"):
            try:
                rows = await self._fetch(SELECT_NEXT_APP_MIGRATION)
            except DB_ERRORS as e:
                logger.error("Failed to read pending app migrations: %s", e)
                return None
        if rows:
            return rows[0]["name"]
        return None

    async def mark_app_migration_as_completed(self, name: str) -> bool:
        """Mark a pending application migration as completed."""
        with timed("mark_app_migration_as_completed"):
            try:
                changed = await self._write((MARK_APP_MIGRATION_COMPLETED, (self._now(), name)))
            except DB_ERRORS as e:
                logger.error("Failed to complete app migration '%s': %s", name, e)
                return False
            return changed == 1

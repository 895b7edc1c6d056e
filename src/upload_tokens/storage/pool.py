"""Bounded pool of aiosqlite connections."""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Deque, Dict

import aiosqlite

from .base import PoolClosedError

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

# Handed to a waiter instead of a connection: a slot is reserved, open your own
_SLOT = object()


class ConnectionPool:
    """Fixed-capacity pool that opens connections lazily.

    When every connection is checked out, acquirers wait in FIFO order until
    one is released, a slot frees up, or the pool is closed.
    """

    def __init__(self, db_path: str, size: int = 5, busy_timeout: float = 5.0):
        """Initialize connection pool.

        Args:
            db_path: Path to SQLite database file
            size: Maximum number of open connections
            busy_timeout: Seconds a statement waits on a locked database
        """
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.db_path = db_path
        # Every connection to :memory: would see its own database
        self.size = 1 if db_path == MEMORY_DATABASE else size
        self.busy_timeout = busy_timeout
        self._idle: Deque[aiosqlite.Connection] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._total = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _connect(self) -> aiosqlite.Connection:
        """Open and configure a new connection."""
        if self.db_path != MEMORY_DATABASE:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
        try:
            conn.row_factory = aiosqlite.Row
            if self.db_path != MEMORY_DATABASE:
                async with conn.execute("PRAGMA journal_mode=WAL"):
                    pass
        except BaseException:
            await conn.close()
            raise
        return conn

    async def _open(self) -> aiosqlite.Connection:
        """Open a connection in a slot already counted in ``_total``."""
        try:
            if self._closed:
                raise PoolClosedError("Connection pool is closed")
            return await self._connect()
        except BaseException:
            self._total -= 1
            self._offer_slot()
            raise

    def _offer_slot(self) -> None:
        """Let the next waiter open a connection in a freed slot."""
        if self._closed or self._total >= self.size:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._total += 1
                waiter.set_result(_SLOT)
                return

    def _hand_off(self, conn: aiosqlite.Connection) -> None:
        """Give a connection to the next waiter, or park it as idle."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(conn)
                return
        self._idle.append(conn)

    async def _checkout(self) -> aiosqlite.Connection:
        if self._closed:
            raise PoolClosedError("Connection pool is closed")

        if self._idle:
            return self._idle.popleft()

        if self._total < self.size:
            self._total += 1
            return await self._open()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            result = await waiter
        except asyncio.CancelledError:
            # Cancelled after being served: pass the grant on
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                granted = waiter.result()
                if granted is _SLOT:
                    self._total -= 1
                    self._offer_slot()
                else:
                    self._hand_off(granted)
            raise
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

        if result is _SLOT:
            return await self._open()
        return result

    async def _release(self, conn: aiosqlite.Connection) -> None:
        try:
            if conn.in_transaction:
                await conn.rollback()
        except (aiosqlite.Error, ValueError) as e:
            logger.error("Discarding connection that failed to roll back: %s", e)
            await self._discard(conn)
            return

        if self._closed:
            await self._discard(conn)
        else:
            self._hand_off(conn)

    async def _discard(self, conn: aiosqlite.Connection) -> None:
        self._total -= 1
        self._offer_slot()
        try:
            await conn.close()
        except (aiosqlite.Error, ValueError) as e:
            logger.error("Failed to close connection: %s", e)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiosqlite.Connection]:
        """Check out a connection for the duration of the block.

        Any transaction left open by the block is rolled back on release.

        Raises:
            PoolClosedError: If the pool is or gets closed
        """
        conn = await self._checkout()
        try:
            yield conn
        finally:
            await self._release(conn)

    async def close(self) -> None:
        """Close idle connections and fail queued acquirers.

        Checked-out connections close on release.
        """
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Connection pool is closed"))
        while self._idle:
            await self._discard(self._idle.popleft())

    def stats(self) -> Dict[str, float]:
        """Report pool gauges."""
        idle = len(self._idle)
        waiting = sum(1 for waiter in self._waiters if not waiter.done())
        return {
            "db_max_count": self.size,
            "db_total_count": self._total,
            "db_idle_count": idle,
            "db_waiting_count": waiting,
            "db_in_use_ratio": self._total / self.size,
            "db_idle_ratio": idle / self.size,
        }

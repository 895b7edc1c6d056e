"""Policies deciding when expired tokens are cleaned up."""

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .base import TokenStore

logger = logging.getLogger(__name__)


class SampledCleanup:
    """Run cleanup inline on a random sample of token creations.

    Sampling bounds how often the cleanup query runs without a scheduler;
    cleanup is idempotent, so skipped rounds only delay it.
    """

    def __init__(self, probability: float = 0.1, rng: Optional[random.Random] = None):
        """Initialize sampling policy.

        Args:
            probability: Chance that a creation triggers cleanup (0 never, 1 always)
            rng: Random source, defaults to the module-level generator
        """
        if not 0.0 <= probability <= 1.0:
            raise ValueError("Cleanup probability must be between 0 and 1")
        self.probability = probability
        self._rng = rng or random.Random()

    def should_run(self) -> bool:
        if self.probability <= 0.0:
            return False
        if self.probability >= 1.0:
            return True
        return self._rng.random() < self.probability


class PeriodicCleanup:
    """Background task that cleans up expired tokens on a fixed interval."""

    def __init__(self, store: "TokenStore", interval: float):
        """Initialize periodic cleanup.

        Args:
            store: Store whose expired tokens are removed
            interval: Seconds between cleanups
        """
        if interval <= 0:
            raise ValueError("Cleanup interval must be positive")
        self.store = store
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.store.cleanup_tokens()
            except Exception:
                logger.exception("Periodic token cleanup failed")

    async def start(self) -> None:
        """Start the cleanup task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Periodic token cleanup started (every %.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the cleanup task."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Periodic token cleanup stopped")

"""Abstract base class for token and image cache storage."""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Maximum number of rows returned by get_tokens_without_uploaded_at
BACKFILL_BATCH_SIZE = 2500


class StoreError(Exception):
    """Base class for storage failures raised by this package."""


class PoolClosedError(StoreError):
    """Raised when a connection is requested from a closed pool."""


class MigrationError(StoreError):
    """Raised when a schema migration cannot be applied."""


class WriteOutcome(Enum):
    """Result of an insert guarded by a uniqueness constraint."""

    CREATED = "created"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class CacheParams:
    """Rendering parameters identifying a cached image."""

    name: str
    width: Optional[int]
    height: Optional[int]
    fit: Optional[str]
    mime: str
    blur: bool = False
    quality: Optional[int] = None


@dataclass
class CompletedUpload:
    """An image whose upload finished."""

    image_id: str
    uploaded_at: datetime


@dataclass
class PendingUpload:
    """A consumed token whose upload was never marked as completed."""

    token: str
    image_id: str


class TokenStore(ABC):
    """Abstract interface for upload tokens and the rendered image cache."""

    async def __aenter__(self) -> "TokenStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def issue_token(self, image_id: str) -> Optional[str]:
        """Generate a fresh token for an image and persist it.

        Args:
            image_id: Image the token authorizes an upload for

        Returns:
            The new token, or None if a token is already pending for the image
        """
        token = await self.create_token(image_id, str(uuid.uuid4()))
        if token:
            logger.info("Created token successfully")
        return token

    @abstractmethod
    async def open(self) -> None:
        """Open connections/resources."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections/resources."""
        pass

    @abstractmethod
    async def migrate(self) -> List[str]:
        """Apply pending schema migrations.

        Returns:
            Versions applied by this call

        Raises:
            MigrationError: If a migration fails
        """
        pass

    @abstractmethod
    async def is_db_alive(self) -> bool:
        """Run a test query against the database."""
        pass

    @abstractmethod
    def stats(self) -> Dict[str, float]:
        """Report connection pool gauges."""
        pass

    @abstractmethod
    async def create_token(self, image_id: str, token: str) -> Optional[str]:
        """Persist a new unused token for an image.

        Args:
            image_id: Image the token authorizes an upload for
            token: Token value to store

        Returns:
            The token if stored, None if one is already pending for the image
            or the store failed
        """
        pass

    @abstractmethod
    async def consume_token(self, token: str, image_id: str) -> bool:
        """Mark an unexpired, unused token as used.

        Returns:
            True if exactly one token was consumed
        """
        pass

    @abstractmethod
    async def mark_upload_as_completed(self, token: str, image_id: str) -> bool:
        """Record the upload time of an unexpired, consumed token.

        Returns:
            True if exactly one token was updated
        """
        pass

    @abstractmethod
    async def delete_token_for_image_id(self, image_id: str) -> None:
        """Delete consumed tokens of an image whose upload never completed."""
        pass

    @abstractmethod
    async def cleanup_tokens(self) -> int:
        """Delete expired tokens that were never used.

        Returns:
            Number of tokens removed (0 on failure)
        """
        pass

    @abstractmethod
    async def get_from_cache(self, params: CacheParams) -> Optional[str]:
        """Look up the URL of a previously rendered image.

        Returns:
            The cached URL, or None on a cache miss
        """
        pass

    @abstractmethod
    async def add_to_cache(
        self, params: CacheParams, url: str, rendered_at: datetime
    ) -> bool:
        """Store the URL of a rendered image.

        Returns:
            True if an entry for the parameters now exists
        """
        pass

    @abstractmethod
    async def images_completed_after(self, threshold: datetime) -> List[CompletedUpload]:
        """List uploads completed after a point in time."""
        pass

    @abstractmethod
    async def get_tokens_without_uploaded_at(self, after: str = "") -> List[PendingUpload]:
        """List a batch of consumed tokens with no recorded upload time.

        Args:
            after: Only list tokens ordered after this one, for paging

        Returns:
            Up to BACKFILL_BATCH_SIZE pending uploads ordered by token
        """
        pass

    @abstractmethod
    async def set_uploaded_at(self, image_id: str, value: datetime) -> int:
        """Set the upload time of an image's consumed tokens if still unset.

        Returns:
            Number of tokens updated
        """
        pass

    @abstractmethod
    async def register_app_migration(self, name: str) -> bool:
        """Add an application migration to the ledger.

        Returns:
            True if the migration was not known before
        """
        pass

    @abstractmethod
    async def next_pending_app_migration(self) -> Optional[str]:
        """Return the oldest application migration not yet completed."""
        pass

    @abstractmethod
    async def mark_app_migration_as_completed(self, name: str) -> bool:
        """Mark a pending application migration as completed."""
        pass

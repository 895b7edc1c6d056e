"""Application-level migrations recorded in the store's change log."""

import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Mapping, Optional

from .storage.base import TokenStore

logger = logging.getLogger(__name__)

AppMigration = Callable[[TokenStore], Awaitable[None]]

BACKFILL_UPLOADED_AT = "backfill_uploaded_at"


async def run_next_app_migration(
    store: TokenStore, migrations: Mapping[str, AppMigration]
) -> Optional[str]:
    """Run the oldest pending application migration and mark it done.

    Args:
        store: Store holding the change log
        migrations: Handlers keyed by migration name

    Returns:
        Name of the migration that ran, or None if nothing could run
    """
    name = await store.next_pending_app_migration()
    if name is None:
        return None

    handler = migrations.get(name)
    if handler is None:
        logger.warning("No handler registered for app migration '%s'", name)
        return None

    logger.info("Running app migration '%s'", name)
    await handler(store)

    if not await store.mark_app_migration_as_completed(name):
        logger.error("App migration '%s' ran but could not be marked as completed", name)
        return None

    logger.info("App migration '%s' completed", name)
    return name


async def run_app_migrations(
    store: TokenStore, migrations: Mapping[str, AppMigration]
) -> List[str]:
    """Run pending application migrations until none can run.

    Returns:
        Names of the migrations that ran, in order
    """
    completed = []
    while True:
        name = await run_next_app_migration(store, migrations)
        if name is None:
            return completed
        completed.append(name)


def backfill_uploaded_at(
    resolve: Callable[[str], Awaitable[Optional[datetime]]],
) -> AppMigration:
    """Build a migration that fills in missing upload times.

    Args:
        resolve: Looks up when an image was uploaded, None if unknown

    Returns:
        Migration handler paging through consumed tokens without uploaded_at
    """

    async def migration(store: TokenStore) -> None:
        total = 0
        unresolved = set()
        after = ""
        while True:
            batch = await store.get_tokens_without_uploaded_at(after=after)
            if not batch:
                break

            for image_id in dict.fromkeys(pending.image_id for pending in batch):
                if image_id in unresolved:
                    continue
                uploaded_at = await resolve(image_id)
                if uploaded_at is None:
                    unresolved.add(image_id)
                else:
                    total += await store.set_uploaded_at(image_id, uploaded_at)

            # Unresolved tokens stay in the table, so page past them
            after = batch[-1].token

        logger.info(
            "Backfilled uploaded_at on %d tokens, %d images unresolved", total, len(unresolved)
        )

    return migration

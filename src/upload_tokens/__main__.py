"""Main entry point for Upload Tokens."""

import asyncio
import logging
from datetime import timedelta

from .config import get_config
from .server import TokenServer
from .storage.cleanup import PeriodicCleanup, SampledCleanup
from .storage.sqlite import SQLiteTokenStore


async def serve() -> None:
    """Migrate the database and serve tokens until cancelled."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = SQLiteTokenStore(
        db_path=config.storage.database_path,
        pool_size=config.storage.pool_size,
        busy_timeout=config.storage.busy_timeout,
        token_ttl=timedelta(minutes=config.storage.token_ttl_minutes),
        cleanup=SampledCleanup(config.storage.cleanup_probability),
    )
    server = TokenServer(store, host=config.server.host, port=config.server.port)
    periodic = None
    if config.storage.cleanup_interval > 0:
        periodic = PeriodicCleanup(store, config.storage.cleanup_interval)

    async with store:
        await store.migrate()
        await server.start()
        if periodic:
            await periodic.start()
        try:
            await asyncio.Event().wait()
        finally:
            if periodic:
                await periodic.stop()
            await server.stop()


def main() -> None:
    """Main entry point."""
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        print("\n👋 Shutting down Upload Tokens...")


if __name__ == "__main__":
    main()

"""Schema migrations shipped as SQL files inside the package."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import resources
from typing import List, Set

import aiosqlite

from .base import MigrationError

logger = logging.getLogger(__name__)

_MIGRATION_FILE = re.compile(r"^(\d{4})_[a-z0-9_]+\.sql$")


@dataclass
class Migration:
    """A single schema migration."""

    version: str
    sql: str


def load_migrations(package: str = "upload_tokens.storage", directory: str = "sql") -> List[Migration]:
    """Read migration files ordered by version.

    Args:
        package: Package holding the migration directory
        directory: Directory name inside the package

    Returns:
        Migrations sorted by their numeric prefix
    """
    migrations = []
    for entry in resources.files(package).joinpath(directory).iterdir():
        if not _MIGRATION_FILE.match(entry.name):
            continue
        version = entry.name[: -len(".sql")]
        migrations.append(Migration(version=version, sql=entry.read_text(encoding="utf-8")))
    return sorted(migrations, key=lambda m: m.version)


async def _ensure_ledger(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    await conn.commit()


async def _applied_versions(conn: aiosqlite.Connection) -> Set[str]:
    async with conn.execute("SELECT version FROM schema_migrations") as cursor:
        return {row[0] for row in await cursor.fetchall()}


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


async def apply_migrations(conn: aiosqlite.Connection, migrations: List[Migration]) -> List[str]:
    """Apply migrations not yet recorded in ``schema_migrations``.

    Each migration runs in its own transaction together with its ledger row,
    so a failing file leaves neither partial schema nor a ledger entry.

    Returns:
        Versions applied by this call

    Raises:
        MigrationError: If a migration fails
    """
    await _ensure_ledger(conn)
    applied = await _applied_versions(conn)

    newly_applied = []
    for migration in migrations:
        if migration.version in applied:
            continue

        applied_at = datetime.now(timezone.utc).isoformat(timespec="microseconds")
        script = (
            "BEGIN;\n"
            f"{migration.sql.strip().rstrip(';')};\n"
            "INSERT INTO schema_migrations (version, applied_at) "
            f"VALUES ({_quote(migration.version)}, {_quote(applied_at)});\n"
            "COMMIT;"
        )
        try:
            await conn.executescript(script)
        except aiosqlite.Error as e:
            if conn.in_transaction:
                await conn.rollback()
            raise MigrationError(f"Migration {migration.version} failed: {e}") from e

        logger.info("Applied schema migration %s", migration.version)
        newly_applied.append(migration.version)

    return newly_applied

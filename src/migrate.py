"""
Schema migrations for the PostgreSQL stores.

Migrations are forward-only ``NNN_description.sql`` files in ``migrations/``,
applied in version order, each in its own transaction. A checksum is recorded
with every applied file so an edited migration is noticed on the next start.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

Migration = Tuple[str, str, Path]


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum CHAR(64) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations() -> List[Migration]:
    """
    Find migration files, sorted by version.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    found = []
    for entry in MIGRATIONS_DIR.iterdir():
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            found.append((match.group(1), entry.name, entry))
    return sorted(found)


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version to the checksum recorded for it."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, version: str, filename: str, sql: str):
    """Run one migration and record it, atomically."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                version,
                filename,
                checksum(sql),
            )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply every pending migration in order.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails. It is rolled back and
            earlier migrations stay applied.
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    applied_count = 0
    for version, filename, path in discover_migrations():
        sql = path.read_text(encoding="utf-8")
        if version in applied:
            if applied[version] != checksum(sql):
                logger.warning(
                    f"Migration {filename} changed after it was applied; "
                    "the change will not be run"
                )
            continue
        await apply_migration(pool, version, filename, sql)
        applied_count += 1

    if applied_count:
        logger.info(f"Successfully applied {applied_count} migration(s)")
    else:
        logger.info("Database schema is up to date")
    return applied_count

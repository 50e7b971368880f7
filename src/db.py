"""
Database Manager - PostgreSQL storage for records, secrets and tags.

Implements the record, secret and tag stores on one asyncpg pool. Each store
operation is a single SQL statement, so writes for a key are atomic and
concurrent operations on different keys don't interfere.
"""

import asyncpg
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from models import (
    ImageRepository,
    ImageRepositorySpec,
    ImageRepositoryStatus,
    NamespacedName,
    Secret,
)
from stores import RecordStore, SecretStore, TagStore

logger = logging.getLogger(__name__)


class DatabaseManager(RecordStore, SecretStore, TagStore):
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== ImageRepository Methods ====================

    async def apply_image_repository(
        self, namespace: str, name: str, spec: ImageRepositorySpec
    ) -> ImageRepository:
        """
        Create or update an ImageRepository's spec.

        The generation starts at 1 and is bumped only when the spec actually
        changes; the status block is left untouched.

        Returns:
            The stored record.
        """
        spec_data = spec.to_dict()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO image_repositories (namespace, name, spec, spec_hash)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (namespace, name) DO UPDATE
                SET spec = EXCLUDED.spec,
                    spec_hash = EXCLUDED.spec_hash,
                    generation = CASE
                        WHEN image_repositories.spec_hash = EXCLUDED.spec_hash
                        THEN image_repositories.generation
                        ELSE image_repositories.generation + 1
                    END,
                    updated_at = NOW()
                RETURNING *
                """,
                namespace,
                name,
                json.dumps(spec_data),
                self._calculate_spec_hash(spec_data),
            )

            repo = self._parse_image_repository_row(row)
            logger.info(
                f"Applied ImageRepository {repo.key} (generation {repo.generation})"
            )
            return repo

    async def get_image_repository(
        self, key: NamespacedName
    ) -> Optional[ImageRepository]:
        """Get an ImageRepository by namespace and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM image_repositories WHERE namespace = $1 AND name = $2",
                key.namespace,
                key.name,
            )
            if not row:
                return None
            return self._parse_image_repository_row(row)

    async def list_image_repositories(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[ImageRepository]:
        """List ImageRepositories, optionally restricted to one namespace."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM image_repositories"
            params: List[Any] = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" WHERE namespace = ${param_count}"
                params.append(namespace)

            param_count += 1
            query += f" ORDER BY namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_image_repository_row(row) for row in rows]

    async def list_image_repository_keys(self) -> List[NamespacedName]:
        """Keys of every ImageRepository."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT namespace, name FROM image_repositories "
                "ORDER BY namespace, name"
            )
            return [NamespacedName(row["namespace"], row["name"]) for row in rows]

    async def update_image_repository_status(
        self, key: NamespacedName, status: ImageRepositoryStatus
    ) -> None:
        """Replace an ImageRepository's status block."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE image_repositories
                SET status = $3, updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                """,
                key.namespace,
                key.name,
                json.dumps(status.to_dict()),
            )
            if result == "UPDATE 0":
                logger.debug(f"Status update for {key} matched no record")

    async def delete_image_repository(self, key: NamespacedName) -> bool:
        """Delete an ImageRepository. Returns False if it did not exist."""
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                """
                DELETE FROM image_repositories
                WHERE namespace = $1 AND name = $2
                RETURNING id
                """,
                key.namespace,
                key.name,
            )
            if deleted:
                logger.info(f"Deleted ImageRepository {key}")
                return True
            return False

    # ==================== Secret Methods ====================

    async def put_secret(self, secret: Secret) -> None:
        """Create or replace a secret."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO secrets (namespace, name, type, data)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (namespace, name) DO UPDATE
                SET type = EXCLUDED.type, data = EXCLUDED.data, updated_at = NOW()
                """,
                secret.namespace,
                secret.name,
                secret.type,
                json.dumps(secret.encoded_data()),
            )
            logger.info(f"Stored secret {secret.key} of type {secret.type}")

    async def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        """Get a secret by namespace and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            data = json.loads(row["data"]) if row["data"] else {}
            return Secret.from_encoded(row["namespace"], row["name"], row["type"], data)

    async def delete_secret(self, namespace: str, name: str) -> bool:
        """Delete a secret. Returns False if it did not exist."""
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                """
                DELETE FROM secrets WHERE namespace = $1 AND name = $2
                RETURNING namespace
                """,
                namespace,
                name,
            )
            return deleted is not None

    # ==================== Tag Methods ====================

    async def set_tags(self, canonical_name: str, tags: List[str]) -> None:
        """Replace the stored tags of a repository."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO image_tags (canonical_name, tags)
                VALUES ($1, $2)
                ON CONFLICT (canonical_name) DO UPDATE
                SET tags = EXCLUDED.tags, updated_at = NOW()
                """,
                canonical_name,
                json.dumps(list(tags)),
            )

    async def get_tags(self, canonical_name: str) -> List[str]:
        """Stored tags of a repository; empty if it has never been scanned."""
        async with self.pool.acquire() as conn:
            tags = await conn.fetchval(
                "SELECT tags FROM image_tags WHERE canonical_name = $1",
                canonical_name,
            )
            return json.loads(tags) if tags else []

    # ==================== Helpers ====================

    def _parse_image_repository_row(self, row: asyncpg.Record) -> ImageRepository:
        """
        Build an ImageRepository from a database row.

        JSON columns may come back as strings (the default asyncpg codec) and
        are decoded here.
        """
        result: Dict[str, Any] = dict(row)
        spec = result.get("spec")
        status = result.get("status")
        if isinstance(spec, str):
            spec = json.loads(spec)
        if isinstance(status, str):
            status = json.loads(status)

        return ImageRepository(
            namespace=result["namespace"],
            name=result["name"],
            generation=result.get("generation", 1),
            spec=ImageRepositorySpec.from_dict(spec or {}),
            status=ImageRepositoryStatus.from_dict(status),
        )

    def _calculate_spec_hash(self, spec: Dict[str, Any]) -> str:
        """Calculate a hash of the spec for change detection."""
        spec_string = json.dumps(spec, sort_keys=True)
        return hashlib.sha256(spec_string.encode()).hexdigest()

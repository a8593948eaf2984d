"""Checksum-tracked SQL migrations shared by the startup hook and bin/migrate.py."""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

from delivery_service.settings import settings

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR_CANDIDATES = (
    Path(__file__).resolve().parents[3] / "migrations",
    Path("/app/migrations"),
)


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    sql: str
    checksum: str


def load_migrations(directory: Path) -> Dict[str, Path]:
    migrations: Dict[str, Path] = {}
    for path in sorted(directory.glob("*.sql")):
        version = path.stem
        if version in migrations:
            raise ValueError(f"Duplicate migration version detected: {version}")
        migrations[version] = path
    return migrations


async def ensure_schema_table(conn: asyncpg.Connection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )


async def pending_migrations(conn: asyncpg.Connection, migrations: Dict[str, Path]) -> List[Migration]:
    await ensure_schema_table(conn)
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}
    pending: List[Migration] = []
    for version, path in migrations.items():
        sql = path.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql.encode("utf-8")).hexdigest()
        if version in applied:
            if applied[version] != checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: {applied[version]} (db) != {checksum} (file)"
                )
            continue
        pending.append(Migration(version, path, sql, checksum))
    return pending


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    async with conn.transaction():
        await conn.execute(migration.sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
            migration.version,
            migration.checksum,
        )


async def _connect(database_url: str, *, attempts: int = 5, delay: float = 2.0) -> asyncpg.Connection | None:
    for attempt in range(1, attempts + 1):
        try:
            return await asyncpg.connect(database_url)
        except (OSError, asyncpg.PostgresError) as exc:
            logger.warning("Database not reachable for migrations", attempt=attempt, attempts=attempts, error=str(exc))
            if attempt < attempts:
                await asyncio.sleep(delay)
    return None


async def apply_migrations_on_startup(_app: web.Application) -> None:
    migrations_dir = next((path for path in MIGRATIONS_DIR_CANDIDATES if path.exists()), None)
    if migrations_dir is None:
        logger.warning("Migrations directory not found, skipping", tried=[str(p) for p in MIGRATIONS_DIR_CANDIDATES])
        return
    migrations = load_migrations(migrations_dir)
    if not migrations:
        return

    conn = await _connect(str(settings.database_url))
    if conn is None:
        logger.error("Skipping migrations, database unavailable")
        return
    try:
        pending = await pending_migrations(conn, migrations)
        for migration in pending:
            logger.info("Applying migration", version=migration.version)
            await apply_migration(conn, migration)
        logger.info("Migrations up to date", applied=len(pending))
    finally:
        await conn.close()

"""
Migration record store (``schema_migrations``).

The record only tells a runner what it may skip. Scripts stay internally
idempotent because the record can drift from the real schema.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncConnection
import structlog

from schemaops.models.schema_migration import SchemaMigration
from schemaops.services.probes import constraint_exists, ensure_column, ensure_constraint, table_exists

logger = structlog.get_logger()

TRACKING_TABLE = "schema_migrations"
UNIQUE_CONSTRAINT = "schema_migrations_migration_name_key"

CREATE_TRACKING_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    id SERIAL PRIMARY KEY,
    migration_name TEXT NOT NULL,
    applied_at TIMESTAMP NOT NULL DEFAULT NOW(),
    execution_time_ms INTEGER,
    notes TEXT
)
"""

# Keeps the oldest record per name so the unique constraint can be added
DEDUPLICATE_SQL = """
DELETE FROM schema_migrations a
USING schema_migrations b
WHERE a.migration_name = b.migration_name
  AND (a.applied_at > b.applied_at OR (a.applied_at = b.applied_at AND a.id > b.id))
"""

_table = SchemaMigration.__table__


@dataclass
class AppliedMigration:
    name: str
    applied_at: Optional[datetime]
    execution_time_ms: Optional[int] = None
    notes: Optional[str] = None


async def ensure_tracking_table(conn: AsyncConnection) -> None:
    await conn.execute(text(CREATE_TRACKING_TABLE_SQL))
    # Tables created by older deployments lack these
    await ensure_column(conn, TRACKING_TABLE, "execution_time_ms", "INTEGER")
    await ensure_column(conn, TRACKING_TABLE, "notes", "TEXT")
    if not await constraint_exists(conn, TRACKING_TABLE, UNIQUE_CONSTRAINT):
        result = await conn.execute(text(DEDUPLICATE_SQL))
        if result.rowcount:
            logger.warning("duplicate_migration_records_removed", rows=result.rowcount)
        await ensure_constraint(conn, TRACKING_TABLE, UNIQUE_CONSTRAINT, "UNIQUE (migration_name)")


async def is_migration_applied(conn: AsyncConnection, name: str) -> bool:
    if not await table_exists(conn, TRACKING_TABLE):
        return False
    result = await conn.execute(
        select(_table.c.migration_name).where(_table.c.migration_name == name)
    )
    return result.first() is not None


async def get_applied_migrations(conn: AsyncConnection) -> Dict[str, AppliedMigration]:
    if not await table_exists(conn, TRACKING_TABLE):
        return {}
    result = await conn.execute(
        select(
            _table.c.migration_name,
            _table.c.applied_at,
            _table.c.execution_time_ms,
            _table.c.notes,
        ).order_by(_table.c.applied_at, _table.c.id)
    )
    return {
        row.migration_name: AppliedMigration(
            name=row.migration_name,
            applied_at=row.applied_at,
            execution_time_ms=row.execution_time_ms,
            notes=row.notes,
        )
        for row in result.all()
    }


async def record_migration(
    conn: AsyncConnection,
    name: str,
    execution_time_ms: Optional[int] = None,
    notes: Optional[str] = None,
) -> bool:
    """Insert the record; a name that is already recorded is left untouched."""
    stmt = (
        insert(_table)
        .values(migration_name=name, execution_time_ms=execution_time_ms, notes=notes)
        .on_conflict_do_nothing(index_elements=["migration_name"])
    )
    result = await conn.execute(stmt)
    return result.rowcount == 1


async def forget_migration(conn: AsyncConnection, name: str) -> bool:
    result = await conn.execute(delete(_table).where(_table.c.migration_name == name))
    if result.rowcount:
        logger.warning("migration_record_removed", migration=name)
    return bool(result.rowcount)

"""
Idempotency helpers: catalog probes and "only if absent" DDL steps.

Every helper is safe to call any number of times: it first inspects
information_schema / pg_catalog and only issues DDL for what is missing.
All functions use the caller's connection and transaction (no commit).
"""

import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection
import structlog

from schemaops.database import is_already_exists_error

logger = structlog.get_logger()

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def safe_identifier(name: str) -> str:
    """Identifiers are interpolated into DDL, so only plain names are accepted."""
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


async def table_exists(conn: AsyncConnection, table: str, schema: str = "public") -> bool:
    result = await conn.execute(
        text(
            "SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = :schema AND table_name = :table"
        ),
        {"schema": schema, "table": table},
    )
    return result.first() is not None


async def column_exists(
    conn: AsyncConnection, table: str, column: str, schema: str = "public"
) -> bool:
    result = await conn.execute(
        text(
            "SELECT 1 FROM information_schema.columns "
            "WHERE table_schema = :schema AND table_name = :table AND column_name = :column"
        ),
        {"schema": schema, "table": table, "column": column},
    )
    return result.first() is not None


async def constraint_exists(
    conn: AsyncConnection, table: str, name: str, schema: str = "public"
) -> bool:
    result = await conn.execute(
        text(
            "SELECT 1 FROM pg_constraint c "
            "JOIN pg_class t ON t.oid = c.conrelid "
            "JOIN pg_namespace n ON n.oid = t.relnamespace "
            "WHERE c.conname = :name AND t.relname = :table AND n.nspname = :schema"
        ),
        {"schema": schema, "table": table, "name": name},
    )
    return result.first() is not None


async def index_exists(conn: AsyncConnection, name: str, schema: str = "public") -> bool:
    result = await conn.execute(
        text("SELECT 1 FROM pg_indexes WHERE schemaname = :schema AND indexname = :name"),
        {"schema": schema, "name": name},
    )
    return result.first() is not None


async def policy_exists(
    conn: AsyncConnection, table: str, name: str, schema: str = "public"
) -> bool:
    result = await conn.execute(
        text(
            "SELECT 1 FROM pg_policies "
            "WHERE schemaname = :schema AND tablename = :table AND policyname = :name"
        ),
        {"schema": schema, "table": table, "name": name},
    )
    return result.first() is not None


async def column_is_nullable(
    conn: AsyncConnection, table: str, column: str, schema: str = "public"
) -> Optional[bool]:
    """None when the column does not exist."""
    result = await conn.execute(
        text(
            "SELECT is_nullable FROM information_schema.columns "
            "WHERE table_schema = :schema AND table_name = :table AND column_name = :column"
        ),
        {"schema": schema, "table": table, "column": column},
    )
    value = result.scalar()
    if value is None:
        return None
    return value == "YES"


async def count_nulls(conn: AsyncConnection, table: str, column: str) -> int:
    t, c = safe_identifier(table), safe_identifier(column)
    result = await conn.execute(text(f"SELECT COUNT(*) FROM {t} WHERE {c} IS NULL"))
    return int(result.scalar() or 0)


# ---------------------------------------------------------------------------
# Convergent DDL steps
# ---------------------------------------------------------------------------


async def ignore_already_exists(conn: AsyncConnection, statement: str) -> bool:
    """
    Run one optional DDL statement inside a savepoint.

    A duplicate-object error (a concurrent run, or the object created under a
    different code path) is swallowed and rolls back only the savepoint;
    every other error propagates. Returns True when the statement took effect.
    """
    try:
        async with conn.begin_nested():
            await conn.execute(text(statement))
    except DBAPIError as exc:
        if not is_already_exists_error(exc):
            raise
        logger.info("object_already_exists", statement=statement.split("\n", 1)[0][:120])
        return False
    return True


async def ensure_column(conn: AsyncConnection, table: str, column: str, ddl: str) -> bool:
    """Add ``column`` with type/default ``ddl`` unless it is already there."""
    t, c = safe_identifier(table), safe_identifier(column)
    if await column_exists(conn, t, c):
        return False
    await conn.execute(text(f"ALTER TABLE {t} ADD COLUMN IF NOT EXISTS {c} {ddl}"))
    logger.info("column_added", table=t, column=c)
    return True


async def ensure_constraint(
    conn: AsyncConnection, table: str, name: str, definition: str
) -> bool:
    t, n = safe_identifier(table), safe_identifier(name)
    if await constraint_exists(conn, t, n):
        return False
    added = await ignore_already_exists(conn, f"ALTER TABLE {t} ADD CONSTRAINT {n} {definition}")
    if added:
        logger.info("constraint_added", table=t, constraint=n)
    return added


async def ensure_index(conn: AsyncConnection, name: str, table: str, columns: str) -> bool:
    n, t = safe_identifier(name), safe_identifier(table)
    if await index_exists(conn, n):
        return False
    await conn.execute(text(f"CREATE INDEX IF NOT EXISTS {n} ON {t}({columns})"))
    return True


async def backfill_column(
    conn: AsyncConnection,
    table: str,
    target: str,
    source: str,
    extra_where: Optional[str] = None,
) -> int:
    """
    Copy ``source`` into ``target`` for rows where target is still NULL.

    Rows whose target was already set (by an earlier partial run or
    independently) are never overwritten. Returns the number of rows updated.
    """
    t = safe_identifier(table)
    tgt, src = safe_identifier(target), safe_identifier(source)
    sql = f"UPDATE {t} SET {tgt} = {src} WHERE {tgt} IS NULL AND {src} IS NOT NULL"
    if extra_where:
        sql += f" AND ({extra_where})"
    result = await conn.execute(text(sql))
    updated = result.rowcount or 0
    if updated:
        logger.info("column_backfilled", table=t, target=tgt, source=src, rows=updated)
    return updated


async def relax_not_null(conn: AsyncConnection, table: str, column: str) -> bool:
    t, c = safe_identifier(table), safe_identifier(column)
    if await column_is_nullable(conn, t, c) is not False:
        return False
    await conn.execute(text(f"ALTER TABLE {t} ALTER COLUMN {c} DROP NOT NULL"))
    logger.info("not_null_relaxed", table=t, column=c)
    return True


async def promote_not_null(conn: AsyncConnection, table: str, column: str) -> bool:
    """SET NOT NULL only once no NULL is left; otherwise leave it for a later run."""
    t, c = safe_identifier(table), safe_identifier(column)
    if await column_is_nullable(conn, t, c) is not True:
        return False
    remaining = await count_nulls(conn, t, c)
    if remaining:
        logger.warning("not_null_promotion_deferred", table=t, column=c, null_rows=remaining)
        return False
    await conn.execute(text(f"ALTER TABLE {t} ALTER COLUMN {c} SET NOT NULL"))
    logger.info("not_null_promoted", table=t, column=c)
    return True


@dataclass
class HandoverResult:
    table: str
    old_column: str
    new_column: str
    added: bool = False
    copied_rows: int = 0
    relaxed_old: bool = False
    promoted_new: bool = False
    remaining_nulls: int = 0


async def handover_column(
    conn: AsyncConnection,
    table: str,
    old: str,
    new: str,
    ddl: str,
    promote: bool = True,
) -> HandoverResult:
    """
    Move a concept from column ``old`` to column ``new`` without a destructive step.

    (a) add ``new``; (b) copy forward from ``old`` only where ``new`` is unset;
    (c) relax NOT NULL on ``old`` instead of dropping it; (d) promote ``new`` to
    NOT NULL once no NULL remains. Each step is independently re-runnable.
    """
    result = HandoverResult(table=table, old_column=old, new_column=new)
    result.added = await ensure_column(conn, table, new, ddl)

    if await column_exists(conn, table, old):
        result.copied_rows = await backfill_column(conn, table, new, old)
        result.relaxed_old = await relax_not_null(conn, table, old)

    if promote:
        result.promoted_new = await promote_not_null(conn, table, new)
    result.remaining_nulls = await count_nulls(conn, table, new)
    return result

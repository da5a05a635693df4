"""Tenant isolation: RLS policy templating and the apply-to-every-tenant-table loop.

Security model:
  * ``get_current_tenant_id()`` reads the transaction-local setting
    ``app.current_tenant_id`` (set through ``set_tenant_context``).
  * Every base table carrying ``tenant_id`` (or the legacy ``org_id``) gets one
    ``tenant_isolation_<table>`` policy FOR ALL with identical USING and
    WITH CHECK predicates.
  * Tables in ``SHARED_ROW_TABLES`` also hold global rows (``tenant_id IS
    NULL``, e.g. the sys-acc-* system accounts); their predicate admits those
    rows, otherwise legitimate global rows become invisible.
  * Tables in ``GLOBAL_TABLES`` are platform-wide and are never policed.

Application code outside the database should not rely on the ambient session
setting: pass the tenant explicitly and build predicates with ``tenant_filter``.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import or_, text
from sqlalchemy.ext.asyncio import AsyncConnection
import structlog

from schemaops.database import execute_script, set_tenant_context
from schemaops.services.probes import policy_exists, safe_identifier

logger = structlog.get_logger()

TENANT_COLUMNS = ("tenant_id", "org_id")

# On these tables tenant_id is a legacy business column, not the owner
TENANT_COLUMN_OVERRIDES = {
    "rental_agreements": "org_id",
}

GLOBAL_TABLES = frozenset({
    "tenants",
    "admin_users",
    "schema_migrations",
    "alembic_version",
    "marketplace_categories",
})

SHARED_ROW_TABLES = frozenset({
    "accounts",
    "categories",
    "app_settings",
    "error_log",
})

TENANT_FUNCTIONS_SQL = """
CREATE OR REPLACE FUNCTION get_current_tenant_id()
RETURNS TEXT AS $$
    SELECT current_setting('app.current_tenant_id', TRUE);
$$ LANGUAGE sql STABLE;

CREATE OR REPLACE FUNCTION get_current_user_id()
RETURNS TEXT AS $$
    SELECT current_setting('app.current_user_id', TRUE);
$$ LANGUAGE sql STABLE;
"""


@dataclass
class PolicyTarget:
    table: str
    column: str
    allow_global: bool = False


def policy_name(table: str) -> str:
    return f"tenant_isolation_{safe_identifier(table)}"


def tenant_predicate(column: str = "tenant_id", allow_global: bool = False) -> str:
    col = safe_identifier(column)
    predicate = f"{col} = get_current_tenant_id()"
    if allow_global:
        predicate += f" OR {col} IS NULL"
    return predicate


def current_tenant_function_sql() -> str:
    return TENANT_FUNCTIONS_SQL


def tenant_policy_sql(
    table: str,
    column: str = "tenant_id",
    allow_global: bool = False,
    force: bool = False,
) -> List[str]:
    """Statements that (re)attach the tenant policy to one table. Re-runnable."""
    t = safe_identifier(table)
    name = policy_name(t)
    predicate = tenant_predicate(column, allow_global)
    statements = [f"ALTER TABLE {t} ENABLE ROW LEVEL SECURITY"]
    if force:
        # Owners bypass RLS unless it is forced
        statements.append(f"ALTER TABLE {t} FORCE ROW LEVEL SECURITY")
    statements.append(f"DROP POLICY IF EXISTS {name} ON {t}")
    statements.append(
        f"CREATE POLICY {name} ON {t}\n"
        f"    FOR ALL\n"
        f"    USING ({predicate})\n"
        f"    WITH CHECK ({predicate})"
    )
    return statements


async def find_tenant_tables(
    conn: AsyncConnection,
    exclude: frozenset = GLOBAL_TABLES,
    shared: frozenset = SHARED_ROW_TABLES,
) -> List[PolicyTarget]:
    """Every public base table with a tenant column, ``tenant_id`` preferred over ``org_id`` unless overridden."""
    result = await conn.execute(
        text(
            "SELECT c.table_name, c.column_name "
            "FROM information_schema.columns c "
            "JOIN information_schema.tables t "
            "  ON t.table_schema = c.table_schema AND t.table_name = c.table_name "
            "WHERE c.table_schema = 'public' "
            "  AND t.table_type = 'BASE TABLE' "
            "  AND c.column_name IN ('tenant_id', 'org_id') "
            "ORDER BY c.table_name"
        )
    )
    columns_by_table: dict[str, set] = {}
    for table_name, column_name in result.all():
        columns_by_table.setdefault(table_name, set()).add(column_name)

    targets = []
    for table_name in sorted(columns_by_table):
        if table_name in exclude:
            continue
        found = columns_by_table[table_name]
        override = TENANT_COLUMN_OVERRIDES.get(table_name)
        if override and override not in found:
            logger.warning("rls_table_skipped", table=table_name, missing_column=override)
            continue
        column = override or next(c for c in TENANT_COLUMNS if c in found)
        targets.append(
            PolicyTarget(table=table_name, column=column, allow_global=table_name in shared)
        )
    return targets


async def apply_tenant_policies(
    conn: AsyncConnection,
    force: bool = False,
    exclude: frozenset = GLOBAL_TABLES,
    shared: frozenset = SHARED_ROW_TABLES,
) -> List[PolicyTarget]:
    """Create the tenant function and attach a uniform policy to every tenant table."""
    await execute_script(conn, TENANT_FUNCTIONS_SQL)

    targets = await find_tenant_tables(conn, exclude=exclude, shared=shared)
    for target in targets:
        replaced = await policy_exists(conn, target.table, policy_name(target.table))
        for statement in tenant_policy_sql(
            target.table, target.column, allow_global=target.allow_global, force=force
        ):
            await conn.execute(text(statement))
        logger.info(
            "rls_policy_applied",
            table=target.table,
            column=target.column,
            allow_global=target.allow_global,
            replaced=replaced,
        )
    return targets


@asynccontextmanager
async def tenant_scope(conn: AsyncConnection, tenant_id: str):
    """Run a block with ``app.current_tenant_id`` set for the current transaction."""
    await set_tenant_context(conn, tenant_id)
    try:
        yield conn
    finally:
        await conn.execute(text("SELECT set_config('app.current_tenant_id', '', true)"))


def tenant_filter(column, tenant_id: Optional[str], include_global: bool = False):
    """
    Explicit tenant predicate for application-layer queries.

    With ``include_global`` the rows shared by every tenant (tenant column NULL)
    are matched too; that is the lookup a uniqueness check must use before
    creating a tenant copy of a system row.
    """
    if not tenant_id:
        raise ValueError("tenant_id is required")
    clause = column == tenant_id
    if include_global:
        return or_(clause, column.is_(None))
    return clause

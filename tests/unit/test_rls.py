"""
Unit tests for schemaops/services/rls.py

Policy templating is checked as text; table discovery and the apply loop
run against a mocked connection.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import Column, MetaData, Table, Text, select
from sqlalchemy.dialects import postgresql

from conftest import executed_sql, make_conn, make_result
from schemaops.services.rls import (
    GLOBAL_TABLES,
    SHARED_ROW_TABLES,
    PolicyTarget,
    apply_tenant_policies,
    current_tenant_function_sql,
    find_tenant_tables,
    policy_name,
    tenant_filter,
    tenant_policy_sql,
    tenant_predicate,
    tenant_scope,
)


# ---------------------------------------------------------------------------
# Templating
# ---------------------------------------------------------------------------


def test_strict_predicate():
    assert tenant_predicate() == "tenant_id = get_current_tenant_id()"


def test_global_rows_predicate():
    assert tenant_predicate("tenant_id", allow_global=True) == (
        "tenant_id = get_current_tenant_id() OR tenant_id IS NULL"
    )


def test_policy_statements_are_rerunnable():
    statements = tenant_policy_sql("bills")
    assert statements[0] == "ALTER TABLE bills ENABLE ROW LEVEL SECURITY"
    assert statements[1] == "DROP POLICY IF EXISTS tenant_isolation_bills ON bills"
    create = statements[2]
    assert create.startswith("CREATE POLICY tenant_isolation_bills ON bills")
    assert "FOR ALL" in create
    assert "USING (tenant_id = get_current_tenant_id())" in create
    assert "WITH CHECK (tenant_id = get_current_tenant_id())" in create


def test_force_adds_force_statement():
    statements = tenant_policy_sql("bills", force=True)
    assert "ALTER TABLE bills FORCE ROW LEVEL SECURITY" in statements


def test_org_id_and_shared_rows():
    create = tenant_policy_sql("rental_agreements", column="org_id")[-1]
    assert "USING (org_id = get_current_tenant_id())" in create

    create = tenant_policy_sql("accounts", allow_global=True)[-1]
    assert "tenant_id IS NULL" in create


def test_injection_is_rejected():
    with pytest.raises(ValueError):
        tenant_policy_sql("bills; DROP TABLE tenants")
    with pytest.raises(ValueError):
        policy_name("a b")


def test_tenant_function_is_stable_and_reads_session_setting():
    sql = current_tenant_function_sql()
    assert "CREATE OR REPLACE FUNCTION get_current_tenant_id()" in sql
    assert "current_setting('app.current_tenant_id', TRUE)" in sql
    assert "STABLE" in sql


def test_platform_tables_are_global_and_accounts_are_shared():
    assert {"tenants", "admin_users", "schema_migrations"} <= GLOBAL_TABLES
    assert {"accounts", "app_settings"} <= SHARED_ROW_TABLES


# ---------------------------------------------------------------------------
# find_tenant_tables
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_find_tenant_tables_prefers_tenant_id_and_skips_global_tables():
    rows = [
        ("accounts", "tenant_id"),
        ("bills", "tenant_id"),
        ("legacy_orders", "org_id"),
        ("legacy_orders", "tenant_id"),
        ("schema_migrations", "tenant_id"),
        ("tenants", "org_id"),
        ("widgets", "org_id"),
    ]
    conn = make_conn(make_result(rows=rows))

    targets = await find_tenant_tables(conn)

    assert targets == [
        PolicyTarget("accounts", "tenant_id", allow_global=True),
        PolicyTarget("bills", "tenant_id"),
        PolicyTarget("legacy_orders", "tenant_id"),
        PolicyTarget("widgets", "org_id"),
    ]


@pytest.mark.asyncio
async def test_rental_agreements_are_always_scoped_by_org_id():
    rows = [("rental_agreements", "org_id"), ("rental_agreements", "tenant_id")]
    targets = await find_tenant_tables(make_conn(make_result(rows=rows)))
    assert targets == [PolicyTarget("rental_agreements", "org_id")]


@pytest.mark.asyncio
async def test_rental_agreements_without_org_id_are_skipped():
    rows = [("rental_agreements", "tenant_id")]
    assert await find_tenant_tables(make_conn(make_result(rows=rows))) == []


# ---------------------------------------------------------------------------
# apply_tenant_policies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_apply_creates_functions_then_one_policy_per_table():
    conn = make_conn()
    targets = [PolicyTarget("bills", "tenant_id"), PolicyTarget("accounts", "tenant_id", True)]
    with patch("schemaops.services.rls.execute_script") as script, \
         patch("schemaops.services.rls.find_tenant_tables", return_value=targets):
        applied = await apply_tenant_policies(conn, force=True)

    script.assert_awaited_once()
    assert "get_current_tenant_id" in script.call_args.args[1]
    assert applied == targets
    sql = executed_sql(conn)
    assert sum(s.startswith("CREATE POLICY") for s in sql) == 2
    assert "ALTER TABLE accounts FORCE ROW LEVEL SECURITY" in sql


@pytest.mark.asyncio
async def test_apply_looks_up_the_existing_policy_before_replacing_it():
    conn = make_conn()
    with patch("schemaops.services.rls.execute_script"), \
         patch("schemaops.services.rls.find_tenant_tables", return_value=[PolicyTarget("bills", "tenant_id")]), \
         patch("schemaops.services.rls.policy_exists", return_value=True) as exists:
        await apply_tenant_policies(conn)

    exists.assert_awaited_once_with(conn, "bills", "tenant_isolation_bills")
    assert any(s.startswith("DROP POLICY IF EXISTS tenant_isolation_bills") for s in executed_sql(conn))


# ---------------------------------------------------------------------------
# tenant_filter
# ---------------------------------------------------------------------------

_bills = Table("bills", MetaData(), Column("id", Text), Column("tenant_id", Text))


def _compile(clause):
    return str(
        select(_bills.c.id).where(clause).compile(
            dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}
        )
    )


def test_tenant_filter_strict():
    sql = _compile(tenant_filter(_bills.c.tenant_id, "tenant-a"))
    assert "bills.tenant_id = 'tenant-a'" in sql
    assert "IS NULL" not in sql


def test_tenant_filter_with_global_rows():
    sql = _compile(tenant_filter(_bills.c.tenant_id, "tenant-a", include_global=True))
    assert "bills.tenant_id = 'tenant-a' OR bills.tenant_id IS NULL" in sql


def test_tenant_filter_requires_tenant():
    with pytest.raises(ValueError):
        tenant_filter(_bills.c.tenant_id, None)


@pytest.mark.asyncio
async def test_tenant_scope_sets_and_clears_context():
    conn = make_conn()
    async with tenant_scope(conn, "tenant-a") as scoped:
        assert scoped is conn
        first = conn.execute.call_args_list[0]
        assert "set_config('app.current_tenant_id', :tid, true)" in str(first.args[0])
        assert first.args[1] == {"tid": "tenant-a"}

    assert "set_config('app.current_tenant_id', '', true)" in executed_sql(conn)[-1]


@pytest.mark.asyncio
async def test_tenant_scope_rejects_empty_tenant():
    with pytest.raises(ValueError):
        async with tenant_scope(make_conn(), " "):
            pass

"""
Unit tests for schemaops/services/discovery.py

Migration sets are written to tmp_path; nothing touches a database.
"""

import pytest

from schemaops.config import BUNDLED_SQL_DIR
from schemaops.services.discovery import (
    DependencyCycleError,
    DestructiveMigrationError,
    MigrationDiscoveryError,
    MissingDependencyError,
    automatic_plan,
    discover_migrations,
    find_destructive_statement,
    is_manual_filename,
    migration_name,
    parse_sql_header,
)


def _write(directory, filename, body="SELECT 1;\n"):
    path = directory / filename
    path.write_text(body, encoding="utf-8")
    return path


def _names(migrations):
    return [m.name for m in migrations]


# ---------------------------------------------------------------------------
# Naming and headers
# ---------------------------------------------------------------------------


def test_migration_name_strips_suffix_and_manual_tag(tmp_path):
    assert migration_name(tmp_path / "20260101_add_x.sql") == "20260101_add_x"
    assert migration_name(tmp_path / "20260101_drop_x.manual.sql") == "20260101_drop_x"
    assert migration_name(tmp_path / "20260101_fix.py") == "20260101_fix"


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("20260101_drop_x.manual.sql", True),
        ("drop_legacy_tables.sql", True),
        ("drop-legacy-tables.sql", True),
        ("20260101_add_x.sql", False),
        ("20260101_manualish.sql", False),
    ],
)
def test_manual_filenames(tmp_path, filename, expected):
    assert is_manual_filename(tmp_path / filename) is expected


def test_header_directives_stop_at_first_statement():
    sql = (
        "-- description: Add things\n"
        "-- depends: a, b\n"
        "\n"
        "ALTER TABLE x ADD COLUMN IF NOT EXISTS y TEXT;\n"
        "-- manual: true\n"
    )
    assert parse_sql_header(sql) == {"description": "Add things", "depends": "a, b"}


def test_destructive_statement_ignores_comments():
    assert find_destructive_statement("-- we used to DROP TABLE here\nSELECT 1;") is None
    assert find_destructive_statement("ALTER TABLE t drop   column c;") == "DROP COLUMN"
    assert find_destructive_statement("DROP POLICY IF EXISTS p ON t;") is None
    assert find_destructive_statement("/* DROP TABLE x; */ SELECT 1;") is None


def test_alter_table_drop_without_column_keyword_is_destructive():
    assert find_destructive_statement("ALTER TABLE bills DROP legacy_ref;") == "DROP LEGACY_REF"
    assert (
        find_destructive_statement("ALTER TABLE bills ADD COLUMN x INT, DROP IF EXISTS legacy_ref;")
        == "DROP IF EXISTS LEGACY_REF"
    )


@pytest.mark.parametrize(
    "sql",
    [
        "ALTER TABLE bills ALTER COLUMN contact_id DROP NOT NULL;",
        "ALTER TABLE bills ALTER COLUMN status DROP DEFAULT;",
        "ALTER TABLE bills DROP CONSTRAINT IF EXISTS bills_contact_id_fkey;",
        "ALTER TABLE bills ALTER COLUMN id DROP IDENTITY IF EXISTS;",
        "DROP INDEX IF EXISTS idx_bills_contact_id;",
    ],
)
def test_non_destructive_drops(sql):
    assert find_destructive_statement(sql) is None


# ---------------------------------------------------------------------------
# discover_migrations
# ---------------------------------------------------------------------------


def test_files_without_dependencies_keep_filename_order(tmp_path):
    _write(tmp_path, "20260203_c.sql")
    _write(tmp_path, "20260201_a.sql")
    _write(tmp_path, "20260202_b.sql")

    assert _names(discover_migrations(tmp_path)) == ["20260201_a", "20260202_b", "20260203_c"]


def test_declared_dependency_overrides_filename_order(tmp_path):
    _write(tmp_path, "20260201_uses_column.sql", "-- depends: 20260205_adds_column\nSELECT 1;\n")
    _write(tmp_path, "20260205_adds_column.sql")

    assert _names(discover_migrations(tmp_path)) == ["20260205_adds_column", "20260201_uses_column"]


def test_python_migration_metadata(tmp_path):
    _write(
        tmp_path,
        "20260210_backfill.py",
        '"""Backfill the thing."""\n'
        'DEPENDS_ON = ["20260201_base"]\n'
        "async def upgrade(conn):\n"
        "    pass\n",
    )
    _write(tmp_path, "20260201_base.sql")

    migrations = discover_migrations(tmp_path)
    backfill = migrations[-1]
    assert backfill.kind == "python"
    assert backfill.depends_on == ("20260201_base",)
    assert backfill.description == "Backfill the thing."


def test_python_migration_without_upgrade_is_rejected(tmp_path):
    _write(tmp_path, "20260210_broken.py", "X = 1\n")
    with pytest.raises(MigrationDiscoveryError, match="upgrade"):
        discover_migrations(tmp_path)


def test_private_and_non_migration_files_are_ignored(tmp_path):
    _write(tmp_path, "20260201_a.sql")
    _write(tmp_path, "_helpers.py", "X = 1\n")
    _write(tmp_path, "README.md", "notes")
    (tmp_path / "__pycache__").mkdir()

    assert _names(discover_migrations(tmp_path)) == ["20260201_a"]


def test_missing_directory_is_an_error(tmp_path):
    with pytest.raises(MigrationDiscoveryError, match="not found"):
        discover_migrations(tmp_path / "nope")


def test_unknown_dependency(tmp_path):
    _write(tmp_path, "20260201_a.sql", "-- depends: 20250101_ghost\nSELECT 1;\n")
    with pytest.raises(MissingDependencyError) as exc_info:
        discover_migrations(tmp_path)
    assert exc_info.value.dependency == "20250101_ghost"


def test_dependency_cycle(tmp_path):
    _write(tmp_path, "a.sql", "-- depends: b\nSELECT 1;\n")
    _write(tmp_path, "b.sql", "-- depends: a\nSELECT 1;\n")
    _write(tmp_path, "c.sql")
    with pytest.raises(DependencyCycleError) as exc_info:
        discover_migrations(tmp_path)
    assert exc_info.value.names == ["a", "b"]


def test_duplicate_names_are_rejected(tmp_path):
    _write(tmp_path, "20260201_a.sql")
    _write(tmp_path, "20260201_a.py", "async def upgrade(conn):\n    pass\n")
    with pytest.raises(MigrationDiscoveryError, match="duplicate"):
        discover_migrations(tmp_path)


# ---------------------------------------------------------------------------
# Manual-only / destructive scripts
# ---------------------------------------------------------------------------


def test_manual_scripts_are_discovered_but_never_planned(tmp_path):
    _write(tmp_path, "20260201_a.sql")
    _write(tmp_path, "20260202_drop_old.manual.sql", "DROP TABLE old;\n")
    _write(tmp_path, "drop_legacy.sql", "DROP TABLE legacy;\n")
    _write(tmp_path, "20260203_flagged.sql", "-- manual: true\nALTER TABLE t DROP COLUMN c;\n")

    migrations = discover_migrations(tmp_path)
    assert {m.name for m in migrations if m.manual} == {
        "20260202_drop_old",
        "drop_legacy",
        "20260203_flagged",
    }
    assert _names(automatic_plan(migrations)) == ["20260201_a"]


def test_untagged_destructive_script_is_refused(tmp_path):
    _write(tmp_path, "20260201_cleanup.sql", "ALTER TABLE bills DROP COLUMN legacy_ref;\n")
    with pytest.raises(DestructiveMigrationError, match="DROP COLUMN"):
        discover_migrations(tmp_path)


def test_untagged_alter_drop_without_column_keyword_is_refused(tmp_path):
    _write(tmp_path, "20260201_a.sql")
    _write(tmp_path, "20260301_cleanup.sql", "ALTER TABLE bills DROP legacy_ref;\n")
    with pytest.raises(DestructiveMigrationError, match="DROP LEGACY_REF"):
        discover_migrations(tmp_path)


def test_python_migration_with_embedded_drop_is_refused(tmp_path):
    _write(
        tmp_path,
        "20260301_cleanup.py",
        "from sqlalchemy import text\n"
        "async def upgrade(conn):\n"
        "    await conn.execute(text(\"ALTER TABLE bills DROP COLUMN legacy_ref\"))\n",
    )
    with pytest.raises(DestructiveMigrationError, match="DROP COLUMN"):
        discover_migrations(tmp_path)


def test_python_migration_flagged_manual_may_drop(tmp_path):
    _write(
        tmp_path,
        "20260301_cleanup.py",
        "# DROP TABLE in a comment is ignored as well\n"
        "from sqlalchemy import text\n"
        "MANUAL = True\n"
        "async def upgrade(conn):\n"
        "    await conn.execute(text(\"DROP TABLE legacy_tasks\"))\n",
    )
    migrations = discover_migrations(tmp_path)
    assert migrations[0].manual is True
    assert automatic_plan(migrations) == []


def test_automatic_migration_cannot_depend_on_manual_one(tmp_path):
    _write(tmp_path, "20260201_drop_old.manual.sql", "DROP TABLE old;\n")
    _write(tmp_path, "20260202_after.sql", "-- depends: 20260201_drop_old\nSELECT 1;\n")
    with pytest.raises(MissingDependencyError, match="manual-only"):
        discover_migrations(tmp_path)


# ---------------------------------------------------------------------------
# Bundled set
# ---------------------------------------------------------------------------


def test_bundled_migrations_load_and_exclude_the_destructive_cleanup():
    migrations = discover_migrations(BUNDLED_SQL_DIR / "versions")
    names = _names(migrations)
    planned = _names(automatic_plan(migrations))

    assert "20260301_drop_legacy_task_tables" in names
    assert "20260301_drop_legacy_task_tables" not in planned
    assert planned.index("20260213_split_vendor_contacts") < planned.index("20260220_enable_tenant_rls")
    assert planned.index("20260219_fix_missing_columns") < planned.index("20260228_consolidate_system_accounts")


def test_bundled_table_migrations_run_before_tenant_policies():
    migrations = discover_migrations(BUNDLED_SQL_DIR / "versions")
    planned = _names(automatic_plan(migrations))
    rls_at = planned.index("20260220_enable_tenant_rls")

    creating = [
        m.name for m in migrations
        if m.kind == "sql" and not m.manual and "CREATE TABLE" in m.path.read_text()
    ]
    assert "20260214_add_payroll_tables" in creating
    assert all(planned.index(name) < rls_at for name in creating)
    assert planned.index("20260202_add_project_tables") < planned.index("20260213_split_vendor_contacts")
    assert planned.index("20260213_split_vendor_contacts") < planned.index("20260214_add_purchase_bills_tables")
    assert planned.index("20260214_add_payroll_tables") < planned.index("20260215_fix_payroll_schema")


def test_bundled_task_cleanup_waits_for_the_tasks_tables():
    migrations = {m.name: m for m in discover_migrations(BUNDLED_SQL_DIR / "versions")}

    assert "20260210_add_tasks_tables" in migrations["20260301_drop_legacy_task_tables"].depends_on

"""
Data-repair scripts.

Both repairs follow the same shape: find the rows matching the corruption
signature, repoint every reference to the canonical row, then retire the
offending row. Running either one again after a full or partial run changes
nothing further.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection
import structlog

from schemaops.services.probes import (
    column_exists,
    ensure_column,
    ensure_constraint,
    ensure_index,
    relax_not_null,
    safe_identifier,
    table_exists,
)

logger = structlog.get_logger()

CONSOLIDATED_SUFFIX = " (consolidated)"


@dataclass(frozen=True)
class SystemAccount:
    id: str
    name: str
    type: str
    description: str


SYSTEM_ACCOUNTS: Tuple[SystemAccount, ...] = (
    SystemAccount("sys-acc-cash", "Cash", "Bank", "Default cash account"),
    SystemAccount("sys-acc-ar", "Accounts Receivable", "Asset", "System account for unpaid invoices"),
    SystemAccount("sys-acc-ap", "Accounts Payable", "Liability", "System account for unpaid bills and salaries"),
    SystemAccount("sys-acc-equity", "Owner Equity", "Equity", "System account for owner capital and equity"),
    SystemAccount("sys-acc-clearing", "Internal Clearing", "Bank", "System account for internal transfers and equity clearing"),
)

# (table, column) pairs holding an account id
ACCOUNT_REFERENCES: Tuple[Tuple[str, str], ...] = (
    ("transactions", "account_id"),
    ("transactions", "from_account_id"),
    ("transactions", "to_account_id"),
    ("investments", "investor_account_id"),
    ("accounts", "parent_account_id"),
)

VENDOR_CONTACT_TYPE = "Vendor"

# Tables whose contact_id may hold a vendor; legacy deployments often lack
# the foreign key, so these are checked even when the catalog has none
VENDOR_REFERENCE_TABLES: Tuple[str, ...] = (
    "bills",
    "transactions",
    "invoices",
    "rental_agreements",
)

# Copied when present on contacts; id, tenant_id and name always are
VENDOR_OPTIONAL_COLUMNS = (
    "description",
    "contact_no",
    "company_name",
    "address",
    "created_at",
    "updated_at",
)

CREATE_VENDORS_SQL = """
CREATE TABLE IF NOT EXISTS vendors (
    id TEXT PRIMARY KEY,
    tenant_id TEXT,
    name TEXT NOT NULL,
    description TEXT,
    contact_no TEXT,
    company_name TEXT,
    address TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
)
"""


@dataclass
class ConsolidationReport:
    created: List[str] = field(default_factory=list)
    repointed: Dict[str, int] = field(default_factory=dict)
    retired: int = 0
    globalised: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or any(self.repointed.values()) or self.retired or self.globalised)


@dataclass
class VendorSplitReport:
    vendors_created: int = 0
    references_moved: Dict[str, int] = field(default_factory=dict)
    contacts_removed: int = 0

    @property
    def bills_moved(self) -> int:
        return self.references_moved.get("bills", 0)


class VendorSplitError(RuntimeError):
    def __init__(self, columns: List[str]):
        self.columns = columns
        super().__init__(
            "vendor contacts are still referenced by "
            + ", ".join(columns)
            + "; repoint or clear those rows before splitting vendors"
        )


def _duplicate_predicate() -> str:
    return (
        "tenant_id IS NOT NULL AND id <> :canonical "
        "AND LOWER(TRIM(name)) IN (:name, :consolidated_name)"
    )


def _match_params(account: SystemAccount) -> Dict[str, str]:
    name = account.name.lower()
    return {
        "canonical": account.id,
        "name": name,
        "consolidated_name": name + CONSOLIDATED_SUFFIX,
    }


async def ensure_system_accounts(conn: AsyncConnection) -> List[str]:
    """Insert missing ``sys-acc-*`` rows; returns the ids created."""
    created = []
    for account in SYSTEM_ACCOUNTS:
        result = await conn.execute(
            text(
                "INSERT INTO accounts "
                "(id, tenant_id, name, type, balance, is_permanent, description, created_at, updated_at) "
                "VALUES (:id, NULL, :name, :type, 0, TRUE, :description, NOW(), NOW()) "
                "ON CONFLICT (id) DO NOTHING"
            ),
            {
                "id": account.id,
                "name": account.name,
                "type": account.type,
                "description": account.description,
            },
        )
        if result.rowcount:
            created.append(account.id)
    return created


async def _present_references(conn: AsyncConnection) -> List[Tuple[str, str]]:
    present = []
    for table, column in ACCOUNT_REFERENCES:
        if await column_exists(conn, table, column):
            present.append((table, column))
        else:
            logger.debug("account_reference_skipped", table=table, column=column)
    return present


async def consolidate_system_accounts(conn: AsyncConnection) -> ConsolidationReport:
    """
    Fold tenant-scoped duplicates of the reserved system accounts into the
    global ``sys-acc-*`` rows.

    A duplicate is any tenant-scoped account whose trimmed, lower-cased name
    equals a reserved name, with or without the ``(consolidated)`` suffix, so
    rows retired by an earlier run keep having their references repointed
    without being renamed again.
    """
    # System rows are global, so older NOT NULL tenant columns must give way
    await relax_not_null(conn, "accounts", "tenant_id")
    await ensure_column(conn, "accounts", "deleted_at", "TIMESTAMP")
    await ensure_column(conn, "accounts", "version", "INTEGER NOT NULL DEFAULT 1")

    report = ConsolidationReport(created=await ensure_system_accounts(conn))
    references = await _present_references(conn)

    for account in SYSTEM_ACCOUNTS:
        params = _match_params(account)
        for table, column in references:
            result = await conn.execute(
                text(
                    f"UPDATE {table} SET {column} = :canonical "
                    f"WHERE {column} IN (SELECT id FROM accounts WHERE {_duplicate_predicate()})"
                ),
                params,
            )
            key = f"{table}.{column}"
            report.repointed[key] = report.repointed.get(key, 0) + (result.rowcount or 0)

        result = await conn.execute(
            text(
                "UPDATE accounts SET "
                "deleted_at = NOW(), "
                "updated_at = NOW(), "
                "name = CASE WHEN LOWER(TRIM(name)) = :consolidated_name "
                "THEN name ELSE TRIM(name) || :suffix END, "
                "version = COALESCE(version, 1) + 1 "
                f"WHERE {_duplicate_predicate()} AND deleted_at IS NULL"
            ),
            {**params, "suffix": CONSOLIDATED_SUFFIX},
        )
        report.retired += result.rowcount or 0

    result = await conn.execute(
        text(
            "UPDATE accounts SET tenant_id = NULL "
            "WHERE id = ANY(:ids) AND tenant_id IS NOT NULL"
        ),
        {"ids": [a.id for a in SYSTEM_ACCOUNTS]},
    )
    report.globalised = result.rowcount or 0

    logger.info(
        "system_accounts_consolidated",
        created=report.created,
        repointed={k: v for k, v in report.repointed.items() if v},
        retired=report.retired,
        globalised=report.globalised,
    )
    return report


async def _vendor_columns(conn: AsyncConnection) -> List[str]:
    columns = ["id", "tenant_id", "name"]
    for column in VENDOR_OPTIONAL_COLUMNS:
        if await column_exists(conn, "contacts", column):
            columns.append(column)
    return columns


async def _contact_foreign_keys(conn: AsyncConnection) -> List[Tuple[str, str, str]]:
    """(table, column, constraint) of every single-column foreign key onto contacts."""
    result = await conn.execute(
        text(
            "SELECT r.relname, a.attname, c.conname "
            "FROM pg_constraint c "
            "JOIN pg_class r ON r.oid = c.conrelid "
            "JOIN pg_attribute a ON a.attrelid = c.conrelid AND a.attnum = c.conkey[1] "
            "WHERE c.contype = 'f' AND c.confrelid = to_regclass('public.contacts') "
            "AND r.relnamespace = 'public'::regnamespace AND array_length(c.conkey, 1) = 1 "
            "ORDER BY 1, 2"
        )
    )
    return [(table, column, name) for table, column, name in result.all()]


async def _contact_references(
    conn: AsyncConnection, foreign_keys: List[Tuple[str, str, str]]
) -> List[str]:
    tables = []
    for table in VENDOR_REFERENCE_TABLES:
        if await column_exists(conn, table, "contact_id"):
            tables.append(table)
    for table, column, _ in foreign_keys:
        if column == "contact_id" and table not in tables:
            tables.append(table)
    return tables


async def _repoint_vendor_foreign_key(conn: AsyncConnection, table: str, constraint: str) -> None:
    # Vendors keep their contact id, so the values stay valid against vendors
    await conn.execute(text(f'ALTER TABLE {table} DROP CONSTRAINT "{constraint}"'))
    await ensure_constraint(
        conn,
        table,
        f"fk_{table}_vendor_id",
        "FOREIGN KEY (vendor_id) REFERENCES vendors(id) ON DELETE RESTRICT",
    )
    logger.info("vendor_foreign_key_repointed", table=table, constraint=constraint)


async def split_vendor_contacts(conn: AsyncConnection) -> VendorSplitReport:
    """
    Move contacts of type ``Vendor`` into their own ``vendors`` table.

    Vendors keep their contact id. Every table that referenced one through
    ``contact_id`` (bills, transactions, invoices, rental agreements and any
    other foreign key onto contacts) gets the same value in an additive
    ``vendor_id`` column and a NULL ``contact_id``. Existing ``vendor_id``
    foreign keys onto contacts are pointed at vendors instead. Every migrated
    contact row is then deleted, so no ``Vendor`` contact survives the split.

    A migrated contact still held by any other foreign key column (an owner or
    broker, say) cannot be moved without a decision on what that column means,
    so the split raises ``VendorSplitError`` before deleting anything.
    """
    report = VendorSplitReport()
    await conn.execute(text(CREATE_VENDORS_SQL))
    await ensure_index(conn, "idx_vendors_tenant_id", "vendors", "tenant_id")

    if not await table_exists(conn, "contacts"):
        logger.info("vendor_split_skipped", reason="contacts table missing")
        return report

    columns = ", ".join(safe_identifier(c) for c in await _vendor_columns(conn))
    result = await conn.execute(
        text(
            f"INSERT INTO vendors ({columns}) "
            f"SELECT {columns} FROM contacts WHERE type = :vendor_type "
            "ON CONFLICT (id) DO NOTHING"
        ),
        {"vendor_type": VENDOR_CONTACT_TYPE},
    )
    report.vendors_created = result.rowcount or 0

    params = {"vendor_type": VENDOR_CONTACT_TYPE}
    migrated = (
        "SELECT c.id FROM contacts c JOIN vendors v ON v.id = c.id "
        "WHERE c.type = :vendor_type"
    )
    foreign_keys = await _contact_foreign_keys(conn)
    for table, column, constraint in foreign_keys:
        if column == "vendor_id":
            await _repoint_vendor_foreign_key(conn, safe_identifier(table), constraint)

    for table in await _contact_references(conn, foreign_keys):
        table = safe_identifier(table)
        await ensure_column(
            conn, table, "vendor_id", "TEXT REFERENCES vendors(id) ON DELETE SET NULL"
        )
        await ensure_index(conn, f"idx_{table}_vendor_id", table, "vendor_id")
        await relax_not_null(conn, table, "contact_id")
        result = await conn.execute(
            text(
                f"UPDATE {table} SET vendor_id = contact_id, contact_id = NULL "
                f"WHERE contact_id IN ({migrated})"
            ),
            params,
        )
        report.references_moved[table] = result.rowcount or 0

    blocking = []
    for table, column, _ in foreign_keys:
        if column in ("contact_id", "vendor_id"):
            continue
        result = await conn.execute(
            text(
                f"SELECT COUNT(*) FROM {safe_identifier(table)} "
                f"WHERE {safe_identifier(column)} IN ({migrated})"
            ),
            params,
        )
        if result.scalar():
            blocking.append(f"{table}.{column}")
    if blocking:
        raise VendorSplitError(blocking)

    result = await conn.execute(
        text(
            "DELETE FROM contacts c USING vendors v "
            "WHERE v.id = c.id AND c.type = :vendor_type"
        ),
        params,
    )
    report.contacts_removed = result.rowcount or 0

    logger.info(
        "vendor_contacts_split",
        vendors_created=report.vendors_created,
        references_moved={k: v for k, v in report.references_moved.items() if v},
        contacts_removed=report.contacts_removed,
    )
    return report

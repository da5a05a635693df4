"""Consolidate duplicate system accounts.

Tenant-scoped accounts were created with the same names as the global
sys-acc-* accounts because an old uniqueness check only looked at
``tenant_id = $1`` and missed the global rows (``tenant_id IS NULL``).
"""

from schemaops.services.consolidation import consolidate_system_accounts

DEPENDS_ON = ["20260201_add_bill_version_column", "20260219_fix_missing_columns"]


async def upgrade(conn):
    await consolidate_system_accounts(conn)

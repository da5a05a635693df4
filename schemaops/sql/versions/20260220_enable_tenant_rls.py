"""Tenant isolation policy on every table that carries a tenant column."""

from schemaops.services.rls import apply_tenant_policies

DEPENDS_ON = [
    "20260205_rental_agreement_org_id",
    "20260210_add_tasks_tables",
    "20260211_add_p2p_tables",
    "20260212_add_shop_tables",
    "20260213_fix_marketing_schema",
    "20260213_split_vendor_contacts",
    "20260214_add_purchase_bills_tables",
    "20260215_fix_payroll_schema",
    "20260219_fix_missing_columns",
]


async def upgrade(conn):
    await apply_tenant_policies(conn)

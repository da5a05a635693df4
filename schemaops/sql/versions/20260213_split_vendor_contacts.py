"""Vendors get their own table; every contact reference to one moves to vendor_id."""

from schemaops.services.consolidation import split_vendor_contacts

DEPENDS_ON = ["20260201_add_bill_version_column", "20260202_add_project_tables"]


async def upgrade(conn):
    await split_vendor_contacts(conn)

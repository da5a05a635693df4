"""Rental agreements: renter moves from tenant_id to contact_id, owner goes to org_id.

Older deployments stored the renter contact in ``tenant_id``. The column is
handed over to ``contact_id`` and left in place (nullable) rather than dropped;
``org_id`` is derived from the renter contact's tenant.
"""

from sqlalchemy import text

from schemaops.services.probes import (
    ensure_column,
    ensure_index,
    handover_column,
    promote_not_null,
    table_exists,
)

TABLE = "rental_agreements"


async def upgrade(conn):
    if not await table_exists(conn, TABLE):
        return

    await handover_column(conn, TABLE, "tenant_id", "contact_id", "TEXT REFERENCES contacts(id)")

    await ensure_column(conn, TABLE, "org_id", "TEXT REFERENCES tenants(id) ON DELETE CASCADE")
    await conn.execute(
        text(
            "UPDATE rental_agreements ra SET org_id = c.tenant_id "
            "FROM contacts c "
            "WHERE c.id = ra.contact_id AND ra.org_id IS NULL AND c.tenant_id IS NOT NULL"
        )
    )
    await promote_not_null(conn, TABLE, "org_id")
    await ensure_index(conn, "idx_rental_agreements_org_id", TABLE, "org_id")
    await ensure_index(conn, "idx_rental_agreements_contact_id", TABLE, "contact_id")

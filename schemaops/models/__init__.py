"""Model registry. Importing this module registers every table on Base.metadata for Alembic."""

from schemaops.database import Base  # noqa: F401

from schemaops.models.schema_migration import SchemaMigration  # noqa: F401
from schemaops.models.admin_user import AdminUser  # noqa: F401

"""create schema_migrations and admin_users

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-03-02 10:00:00.000000

Both tables are also created on demand by the runner, so each one is only
created here when it is not there yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "3f1a9c2e7b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _has_table("schema_migrations"):
        op.create_table(
            "schema_migrations",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("migration_name", sa.Text(), nullable=False),
            sa.Column("applied_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("execution_time_ms", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.UniqueConstraint("migration_name", name="schema_migrations_migration_name_key"),
        )

    if not _has_table("admin_users"):
        op.create_table(
            "admin_users",
            sa.Column("id", sa.Text(), primary_key=True),
            sa.Column("username", sa.Text(), nullable=False, unique=True),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("email", sa.Text(), nullable=False, unique=True),
            sa.Column("password", sa.Text(), nullable=False),
            sa.Column("role", sa.String(50), nullable=False, server_default="admin"),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("last_login", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )


def downgrade() -> None:
    op.drop_table("admin_users")
    op.drop_table("schema_migrations")

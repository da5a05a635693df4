"""
Environment drift: compare two databases and emit an additive fix script.

The generated script only ever creates missing tables and adds missing
columns; it never drops or alters existing objects. It is meant to be
reviewed by an operator before being applied to the target.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection
import structlog

logger = structlog.get_logger()

SERIAL_TYPES = {"INTEGER": "SERIAL", "BIGINT": "BIGSERIAL", "SMALLINT": "SMALLSERIAL"}


@dataclass
class ColumnDef:
    name: str
    data_type: str
    is_nullable: bool = True
    default: Optional[str] = None
    character_maximum_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    udt_name: Optional[str] = None


@dataclass
class TableDef:
    name: str
    columns: List[ColumnDef] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)

    def column_names(self) -> set:
        return {c.name for c in self.columns}


async def fetch_schema(conn: AsyncConnection, schema: str = "public") -> Dict[str, TableDef]:
    tables: Dict[str, TableDef] = {}
    result = await conn.execute(
        text(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = :schema AND table_type = 'BASE TABLE' "
            "ORDER BY table_name"
        ),
        {"schema": schema},
    )
    for row in result.all():
        tables[row.table_name] = TableDef(name=row.table_name)

    result = await conn.execute(
        text(
            "SELECT table_name, column_name, data_type, is_nullable, column_default, "
            "character_maximum_length, numeric_precision, numeric_scale, udt_name "
            "FROM information_schema.columns "
            "WHERE table_schema = :schema "
            "ORDER BY table_name, ordinal_position"
        ),
        {"schema": schema},
    )
    for row in result.all():
        table = tables.get(row.table_name)
        if table is None:
            # views also show up in information_schema.columns
            continue
        table.columns.append(
            ColumnDef(
                name=row.column_name,
                data_type=row.data_type,
                is_nullable=row.is_nullable == "YES",
                default=row.column_default,
                character_maximum_length=row.character_maximum_length,
                numeric_precision=row.numeric_precision,
                numeric_scale=row.numeric_scale,
                udt_name=row.udt_name,
            )
        )

    result = await conn.execute(
        text(
            "SELECT tc.table_name, kcu.column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "  ON kcu.constraint_name = tc.constraint_name "
            " AND kcu.table_schema = tc.table_schema "
            " AND kcu.table_name = tc.table_name "
            "WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = :schema "
            "ORDER BY tc.table_name, kcu.ordinal_position"
        ),
        {"schema": schema},
    )
    for row in result.all():
        if row.table_name in tables:
            tables[row.table_name].primary_key.append(row.column_name)

    logger.debug("schema_fetched", tables=len(tables))
    return tables


def format_type(column: ColumnDef) -> str:
    data_type = column.data_type.lower()

    if data_type == "user-defined":
        return column.udt_name
    if data_type == "array":
        # udt_name of an array is the element type prefixed with "_"
        return f"{(column.udt_name or '').lstrip('_').upper()}[]"
    if data_type == "character varying":
        if column.character_maximum_length:
            return f"VARCHAR({column.character_maximum_length})"
        return "TEXT"
    if data_type == "character":
        return f"CHAR({column.character_maximum_length or 1})"
    if data_type in ("numeric", "decimal"):
        if column.numeric_precision:
            return f"DECIMAL({column.numeric_precision}, {column.numeric_scale or 0})"
        return "DECIMAL"
    if data_type == "timestamp without time zone":
        return "TIMESTAMP"
    if data_type == "timestamp with time zone":
        return "TIMESTAMPTZ"
    return data_type.upper()


def _is_sequence_default(column: ColumnDef) -> bool:
    return bool(column.default) and column.default.startswith("nextval(")


def format_column_definition(column: ColumnDef, for_create: bool = True) -> str:
    """
    Render ``name TYPE [NOT NULL] [DEFAULT ...]``.

    Sequence-backed integer columns become SERIAL types so the target gets
    its own sequence. When adding a column to an existing table, NOT NULL
    is only kept if a default exists to fill the current rows.
    """
    column_type = format_type(column)
    default = column.default
    if _is_sequence_default(column) and column_type in SERIAL_TYPES:
        column_type, default = SERIAL_TYPES[column_type], None

    parts = [column.name, column_type]
    if not column.is_nullable and (for_create or default is not None or column_type.endswith("SERIAL")):
        parts.append("NOT NULL")
    if default is not None:
        parts.append(f"DEFAULT {default}")
    return " ".join(parts)


def _create_table_sql(table: TableDef) -> str:
    lines = [f"    {format_column_definition(c)}" for c in table.columns]
    if table.primary_key:
        lines.append(f"    PRIMARY KEY ({', '.join(table.primary_key)})")
    return f"CREATE TABLE IF NOT EXISTS {table.name} (\n" + ",\n".join(lines) + "\n);"


def generate_diff_sql(
    source: Dict[str, TableDef],
    target: Dict[str, TableDef],
    generated_at: Optional[datetime] = None,
) -> str:
    """Build the script that brings ``target`` up to the tables/columns of ``source``."""
    generated_at = generated_at or datetime.now(timezone.utc)
    statements = [
        "-- Generated schema fix script",
        f"-- Date: {generated_at.isoformat()}",
        "BEGIN;",
    ]

    missing_tables = [name for name in sorted(source) if name not in target]
    if missing_tables:
        statements.append("-- Missing tables")
        for name in missing_tables:
            statements.append(_create_table_sql(source[name]))
            statements.append(f"-- Foreign keys for {name} are not generated; review before applying")

    missing_columns = 0
    for name in sorted(source):
        if name not in target:
            continue
        existing = target[name].column_names()
        absent = [c for c in source[name].columns if c.name not in existing]
        if not absent:
            continue
        statements.append(f"-- Missing columns in {name}")
        for column in absent:
            missing_columns += 1
            definition = format_column_definition(column, for_create=False)
            statements.append(f"ALTER TABLE {name} ADD COLUMN IF NOT EXISTS {definition};")
            if not column.is_nullable and "NOT NULL" not in definition:
                statements.append(
                    f"-- {name}.{column.name} is NOT NULL in the source but has no default; "
                    "backfill, then SET NOT NULL"
                )

    statements.append("COMMIT;")
    logger.info(
        "schema_diff_generated",
        missing_tables=len(missing_tables),
        missing_columns=missing_columns,
    )
    return "\n\n".join(statements) + "\n"

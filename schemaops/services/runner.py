"""
Migration runner: base schema, pending migrations, manual scripts.

Each migration runs in its own transaction together with its tracking record,
so a failing statement rolls back the whole script and the migration stays
pending. Migrations run sequentially in dependency order; the first failure
stops the run because later migrations may depend on it.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
import structlog

from schemaops.config import Settings, settings
from schemaops.database import (
    error_sqlstate,
    execute_script,
    get_engine,
    redact_url,
    wait_for_database,
)
from schemaops.services.admin_seed import seed_admin
from schemaops.services.discovery import (
    Migration,
    MigrationDiscoveryError,
    MissingDependencyError,
    automatic_plan,
    discover_migrations,
)
from schemaops.services.tracker import (
    AppliedMigration,
    ensure_tracking_table,
    forget_migration,
    get_applied_migrations,
    record_migration,
)

logger = structlog.get_logger()

BASE_SCHEMA_NAME = "base-schema"


class MigrationError(Exception):
    def __init__(self, migration: str, cause: BaseException):
        self.migration = migration
        self.sqlstate = error_sqlstate(cause)
        detail = str(cause).strip().splitlines()[0] if str(cause).strip() else type(cause).__name__
        suffix = f" [{self.sqlstate}]" if self.sqlstate else ""
        super().__init__(f"{migration} failed{suffix}: {detail}")


class BackupNotConfirmedError(Exception):
    def __init__(self, migration: str):
        self.migration = migration
        super().__init__(
            f"{migration} is destructive and manual-only; take a backup and confirm it first"
        )


@dataclass
class RunReport:
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    manual: List[str] = field(default_factory=list)
    base_schema_applied: bool = False
    admin_created: bool = False
    failed: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failed is None


@dataclass
class MigrationStatus:
    applied: List[AppliedMigration] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    manual_pending: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def _execute_migration(conn: AsyncConnection, migration: Migration) -> None:
    if migration.kind == "sql":
        await execute_script(conn, migration.read_sql())
    else:
        await migration.load_module().upgrade(conn)


async def apply_migration(
    engine: AsyncEngine, migration: Migration, notes: Optional[str] = None
) -> int:
    """Run one migration and record it in the same transaction. Returns elapsed ms."""
    logger.info("migration_started", migration=migration.name, description=migration.description)
    start = time.monotonic()
    try:
        async with engine.begin() as conn:
            await _execute_migration(conn, migration)
            elapsed = _elapsed_ms(start)
            await record_migration(conn, migration.name, elapsed, notes)
    except Exception as exc:
        logger.error(
            "migration_failed",
            migration=migration.name,
            sqlstate=error_sqlstate(exc),
            error=str(exc),
        )
        raise MigrationError(migration.name, exc) from exc
    logger.info("migration_applied", migration=migration.name, execution_time_ms=elapsed)
    return elapsed


async def apply_base_schema(engine: AsyncEngine, path: Path) -> bool:
    """
    Apply the consolidated schema file. It is fully idempotent, so it runs on
    every invocation; the tracking record is only written the first time.
    Returns True when the record was created.
    """
    path = Path(path)
    logger.info("base_schema_started", path=str(path))
    start = time.monotonic()
    try:
        async with engine.begin() as conn:
            await execute_script(conn, path.read_text(encoding="utf-8"))
            recorded = await record_migration(
                conn, BASE_SCHEMA_NAME, _elapsed_ms(start), "Consolidated base schema"
            )
    except Exception as exc:
        logger.error("base_schema_failed", sqlstate=error_sqlstate(exc), error=str(exc))
        raise MigrationError(BASE_SCHEMA_NAME, exc) from exc
    logger.info("base_schema_verified", execution_time_ms=_elapsed_ms(start))
    return recorded


async def run_pending(
    engine: AsyncEngine,
    directory: Path,
    base_schema_path: Optional[Path] = None,
    dry_run: bool = False,
) -> RunReport:
    """Converge the database: base schema, then every pending automatic migration."""
    migrations = discover_migrations(directory)
    report = RunReport(manual=[m.name for m in migrations if m.manual])

    if not dry_run:
        async with engine.begin() as conn:
            await ensure_tracking_table(conn)
        if base_schema_path is not None:
            try:
                report.base_schema_applied = await apply_base_schema(engine, base_schema_path)
            except MigrationError as exc:
                report.failed, report.error = BASE_SCHEMA_NAME, str(exc)
                return report

    async with engine.connect() as conn:
        applied = await get_applied_migrations(conn)

    for migration in automatic_plan(migrations):
        if migration.name in applied:
            report.skipped.append(migration.name)
            logger.debug("migration_skipped", migration=migration.name)
            continue
        if dry_run:
            report.planned.append(migration.name)
            continue
        try:
            await apply_migration(engine, migration)
        except MigrationError as exc:
            report.failed, report.error = migration.name, str(exc)
            break
        report.applied.append(migration.name)

    logger.info(
        "migrations_finished",
        applied=len(report.applied),
        skipped=len(report.skipped),
        planned=len(report.planned),
        failed=report.failed,
    )
    return report


async def run_manual(
    engine: AsyncEngine, directory: Path, name: str, confirm_backup: bool = False
) -> Optional[int]:
    """
    Run exactly one manual-only migration. Returns elapsed ms, or None when it
    was already applied.
    """
    by_name = {m.name: m for m in discover_migrations(directory)}
    migration = by_name.get(name)
    if migration is None:
        raise MigrationDiscoveryError(f"unknown migration {name}")
    if not migration.manual:
        raise MigrationDiscoveryError(f"{name} is not manual-only; it runs with 'migrate'")
    if not confirm_backup:
        raise BackupNotConfirmedError(name)

    async with engine.begin() as conn:
        await ensure_tracking_table(conn)
        applied = await get_applied_migrations(conn)
    if name in applied:
        logger.info("migration_skipped", migration=name, reason="already applied")
        return None
    for dependency in migration.depends_on:
        if dependency not in applied:
            raise MissingDependencyError(name, dependency, reason="has not been applied")

    logger.warning("manual_migration_started", migration=name)
    return await apply_migration(engine, migration, notes="Manual run, backup confirmed")


async def mark_applied(
    engine: AsyncEngine, directory: Path, name: str, notes: Optional[str] = None
) -> bool:
    """Record a migration without running it (the schema already has its changes)."""
    known = {m.name for m in discover_migrations(directory)} | {BASE_SCHEMA_NAME}
    if name not in known:
        raise MigrationDiscoveryError(f"unknown migration {name}")
    async with engine.begin() as conn:
        await ensure_tracking_table(conn)
        recorded = await record_migration(conn, name, None, notes or "Marked applied by operator")
    logger.info("migration_marked_applied", migration=name, recorded=recorded)
    return recorded


async def forget(engine: AsyncEngine, name: str) -> bool:
    """Drop a tracking record so the migration runs again on the next invocation."""
    async with engine.begin() as conn:
        return await forget_migration(conn, name)


async def migration_status(engine: AsyncEngine, directory: Path) -> MigrationStatus:
    migrations = discover_migrations(directory)
    async with engine.connect() as conn:
        applied = await get_applied_migrations(conn)

    known = {m.name for m in migrations} | {BASE_SCHEMA_NAME}
    return MigrationStatus(
        applied=list(applied.values()),
        pending=[m.name for m in automatic_plan(migrations) if m.name not in applied],
        manual_pending=[m.name for m in migrations if m.manual and m.name not in applied],
        unknown=[name for name in applied if name not in known],
    )


async def run_migrations(
    engine: Optional[AsyncEngine] = None,
    config: Settings = settings,
    seed: bool = True,
) -> RunReport:
    """Startup sequence: converge the schema, then make sure the admin account exists."""
    engine = engine or get_engine()
    logger.info("migrations_starting", database=redact_url(engine.url))
    await wait_for_database(engine)
    report = await run_pending(engine, config.migrations_dir, config.base_schema_path)
    if report.ok and seed:
        async with engine.begin() as conn:
            report.admin_created = await seed_admin(
                conn,
                username=config.ADMIN_USERNAME,
                name=config.ADMIN_NAME,
                email=config.ADMIN_EMAIL,
                password=config.ADMIN_PASSWORD,
            )
    return report

#!/usr/bin/env python3
"""
Operator command line.

Usage:
  schemaops migrate [--dry-run]
  schemaops status
  schemaops run-manual NAME --i-have-a-backup
  schemaops mark-applied NAME [--notes TEXT]
  schemaops forget NAME
  schemaops apply-rls [--force]
  schemaops consolidate-accounts
  schemaops split-vendors
  schemaops diff --source URL --target URL [--output PATH]
  schemaops seed-admin
  schemaops serve [--host HOST] [--port PORT] [--reload]

Exit status: 0 on success, 1 when a command fails, 2 when the database
configuration is missing or invalid.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine
import structlog
import uvicorn

from schemaops.config import settings
from schemaops.database import (
    InvalidDatabaseURL,
    check_host_resolves,
    create_engine,
    redact_url,
    validate_database_url,
)
from schemaops.logging_config import setup_logging
from schemaops.services.admin_seed import seed_admin
from schemaops.services.consolidation import (
    VendorSplitError,
    consolidate_system_accounts,
    split_vendor_contacts,
)
from schemaops.services.discovery import MigrationDiscoveryError
from schemaops.services.rls import apply_tenant_policies
from schemaops.services.runner import (
    BackupNotConfirmedError,
    MigrationError,
    forget,
    mark_applied,
    migration_status,
    run_manual,
    run_pending,
)
from schemaops.services.schema_diff import fetch_schema, generate_diff_sql

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_engine(url: Optional[str]) -> AsyncEngine:
    """Validate a connection string (syntax and resolvable host) and build an engine."""
    parsed = validate_database_url(url)
    check_host_resolves(parsed)
    return create_engine(parsed)


async def cmd_migrate(engine: AsyncEngine, args) -> int:
    report = await run_pending(
        engine, settings.migrations_dir, settings.base_schema_path, dry_run=args.dry_run
    )
    if args.dry_run:
        for name in report.planned:
            print(f"would apply  {name}")
        for name in report.manual:
            print(f"manual-only  {name}")
        print(f"{len(report.planned)} pending, {len(report.skipped)} already applied")
        return EXIT_OK

    for name in report.applied:
        print(f"applied  {name}")
    if not report.ok:
        print(f"FAILED   {report.failed}: {report.error}", file=sys.stderr)
        return EXIT_FAILED
    print(f"{len(report.applied)} applied, {len(report.skipped)} already applied")
    return EXIT_OK


async def cmd_status(engine: AsyncEngine, args) -> int:
    status = await migration_status(engine, settings.migrations_dir)
    for applied in status.applied:
        when = applied.applied_at.isoformat() if applied.applied_at else "-"
        print(f"applied  {applied.name}  {when}")
    for name in status.pending:
        print(f"pending  {name}")
    for name in status.manual_pending:
        print(f"manual   {name}")
    for name in status.unknown:
        print(f"unknown  {name}")
    return EXIT_OK


async def cmd_run_manual(engine: AsyncEngine, args) -> int:
    elapsed = await run_manual(
        engine, settings.migrations_dir, args.name, confirm_backup=args.i_have_a_backup
    )
    if elapsed is None:
        print(f"{args.name} is already applied")
    else:
        print(f"applied  {args.name} ({elapsed} ms)")
    return EXIT_OK


async def cmd_mark_applied(engine: AsyncEngine, args) -> int:
    recorded = await mark_applied(engine, settings.migrations_dir, args.name, args.notes)
    print(f"{args.name} {'recorded' if recorded else 'was already recorded'}")
    return EXIT_OK


async def cmd_forget(engine: AsyncEngine, args) -> int:
    removed = await forget(engine, args.name)
    if not removed:
        print(f"{args.name} has no record", file=sys.stderr)
        return EXIT_FAILED
    print(f"{args.name} will run again on the next migrate")
    return EXIT_OK


async def cmd_apply_rls(engine: AsyncEngine, args) -> int:
    async with engine.begin() as conn:
        targets = await apply_tenant_policies(conn, force=args.force)
    for target in targets:
        scope = f"{target.column} or global" if target.allow_global else target.column
        print(f"policy  {target.table} ({scope})")
    print(f"{len(targets)} tables protected")
    return EXIT_OK


async def cmd_consolidate_accounts(engine: AsyncEngine, args) -> int:
    async with engine.begin() as conn:
        report = await consolidate_system_accounts(conn)
    print(
        f"created {len(report.created)}, retired {report.retired}, "
        f"repointed {sum(report.repointed.values())} references"
    )
    return EXIT_OK


async def cmd_split_vendors(engine: AsyncEngine, args) -> int:
    async with engine.begin() as conn:
        report = await split_vendor_contacts(conn)
    moved = ", ".join(f"{table} {rows}" for table, rows in report.references_moved.items() if rows)
    print(
        f"vendors created {report.vendors_created}, references moved {moved or 'none'}, "
        f"contacts removed {report.contacts_removed}"
    )
    return EXIT_OK


async def cmd_seed_admin(engine: AsyncEngine, args) -> int:
    async with engine.begin() as conn:
        created = await seed_admin(
            conn,
            username=settings.ADMIN_USERNAME,
            name=settings.ADMIN_NAME,
            email=settings.ADMIN_EMAIL,
            password=settings.ADMIN_PASSWORD,
        )
    print("admin user created" if created else "admin user unchanged")
    return EXIT_OK


async def cmd_diff(args) -> int:
    source = build_engine(args.source)
    target = build_engine(args.target)
    print(f"source: {redact_url(source.url)}", file=sys.stderr)
    print(f"target: {redact_url(target.url)}", file=sys.stderr)
    try:
        async with source.connect() as conn:
            source_schema = await fetch_schema(conn)
        async with target.connect() as conn:
            target_schema = await fetch_schema(conn)
    finally:
        await source.dispose()
        await target.dispose()

    script = generate_diff_sql(source_schema, target_schema)
    if args.output:
        Path(args.output).write_text(script, encoding="utf-8")
        print(f"fix script written to {args.output}", file=sys.stderr)
    else:
        sys.stdout.write(script)
    return EXIT_OK


COMMANDS = {
    "migrate": cmd_migrate,
    "status": cmd_status,
    "run-manual": cmd_run_manual,
    "mark-applied": cmd_mark_applied,
    "forget": cmd_forget,
    "apply-rls": cmd_apply_rls,
    "consolidate-accounts": cmd_consolidate_accounts,
    "split-vendors": cmd_split_vendors,
    "seed-admin": cmd_seed_admin,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schemaops", description="Idempotent schema migrations and tenant isolation"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    migrate = sub.add_parser("migrate", help="Apply the base schema and pending migrations")
    migrate.add_argument("--dry-run", action="store_true", help="Only list what would run")

    sub.add_parser("status", help="List applied, pending and manual-only migrations")

    manual = sub.add_parser("run-manual", help="Run one manual-only (destructive) migration")
    manual.add_argument("name")
    manual.add_argument(
        "--i-have-a-backup",
        action="store_true",
        help="Confirm a backup of the database was taken",
    )

    mark = sub.add_parser("mark-applied", help="Record a migration without running it")
    mark.add_argument("name")
    mark.add_argument("--notes", default=None)

    forget_cmd = sub.add_parser("forget", help="Remove a migration record")
    forget_cmd.add_argument("name")

    rls = sub.add_parser("apply-rls", help="Attach tenant isolation policies to every tenant table")
    rls.add_argument("--force", action="store_true", help="Also FORCE row level security")

    sub.add_parser("consolidate-accounts", help="Fold duplicate system accounts into sys-acc-*")
    sub.add_parser("split-vendors", help="Move Vendor contacts into the vendors table")
    sub.add_parser("seed-admin", help="Create the bootstrap admin user if missing")

    diff = sub.add_parser("diff", help="Generate an additive fix script from source to target")
    diff.add_argument("--source", required=True, help="Reference database URL")
    diff.add_argument("--target", required=True, help="Database URL to bring up to date")
    diff.add_argument("--output", default=None, help="Write the script here instead of stdout")

    serve = sub.add_parser("serve", help="Run the ops HTTP service")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Restart on code changes")
    return parser


async def _run(args) -> int:
    if args.command == "diff":
        return await cmd_diff(args)

    engine = build_engine(settings.DATABASE_URL)
    logger.debug("database_selected", database=redact_url(engine.url))
    try:
        return await COMMANDS[args.command](engine, args)
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        # uvicorn owns the event loop and configures logging in the app lifespan
        uvicorn.run("schemaops.main:app", host=args.host, port=args.port, reload=args.reload)
        return EXIT_OK

    # stdout carries command output (the diff script), logs go to stderr
    setup_logging(sys.stderr)
    try:
        return asyncio.run(_run(args))
    except InvalidDatabaseURL as exc:
        print(f"invalid database configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except (
        MigrationError, MigrationDiscoveryError, BackupNotConfirmedError, VendorSplitError
    ) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())

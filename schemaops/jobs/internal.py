"""
Operator jobs triggered over HTTP (deploy hooks, schedulers).

Jobs:
  - migrate: converge the schema and seed the admin account
  - apply-rls: (re)attach tenant isolation policies to every tenant table
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine
import structlog

from schemaops.config import settings
from schemaops.database import get_engine
from schemaops.schemas.migration import (
    ApplyRlsRequest,
    ApplyRlsResponse,
    MigrateRequest,
    PolicyResponse,
    RunReportResponse,
)
from schemaops.services.rls import apply_tenant_policies
from schemaops.services.runner import run_migrations, run_pending

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """Validate the X-Internal-Secret header against INTERNAL_JOB_SECRET."""
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # Development only: no secret configured means open
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/migrate", response_model=RunReportResponse)
async def migrate(
    body: Optional[MigrateRequest] = None,
    engine: AsyncEngine = Depends(get_engine),
    _auth: None = Depends(_require_internal_auth),
):
    """Apply pending migrations; a failed run answers 500 with the report."""
    body = body or MigrateRequest()
    if body.dry_run:
        report = await run_pending(
            engine, settings.migrations_dir, settings.base_schema_path, dry_run=True
        )
    else:
        report = await run_migrations(engine, settings)

    payload = RunReportResponse(
        ok=report.ok,
        applied=report.applied,
        skipped=report.skipped,
        planned=report.planned,
        manual=report.manual,
        base_schema_applied=report.base_schema_applied,
        failed=report.failed,
        error=report.error,
    )
    if not report.ok:
        return JSONResponse(status_code=500, content=payload.model_dump())
    return payload


@router.post("/apply-rls", response_model=ApplyRlsResponse)
async def apply_rls(
    body: Optional[ApplyRlsRequest] = None,
    engine: AsyncEngine = Depends(get_engine),
    _auth: None = Depends(_require_internal_auth),
):
    body = body or ApplyRlsRequest()
    async with engine.begin() as conn:
        targets = await apply_tenant_policies(conn, force=body.force)
    logger.info("rls_job_completed", tables=len(targets), force=body.force)
    return ApplyRlsResponse(
        policies=[
            PolicyResponse(table=t.table, column=t.column, allow_global=t.allow_global)
            for t in targets
        ],
        count=len(targets),
    )

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncEngine
import structlog

from schemaops.config import settings
from schemaops.database import get_engine
from schemaops.schemas.migration import AppliedMigrationResponse, MigrationStatusResponse
from schemaops.services.runner import migration_status

logger = structlog.get_logger()
router = APIRouter()


@router.get("", response_model=MigrationStatusResponse)
async def get_migration_status(engine: AsyncEngine = Depends(get_engine)):
    status = await migration_status(engine, settings.migrations_dir)
    return MigrationStatusResponse(
        applied=[
            AppliedMigrationResponse(
                name=m.name,
                applied_at=m.applied_at,
                execution_time_ms=m.execution_time_ms,
                notes=m.notes,
            )
            for m in status.applied
        ],
        pending=status.pending,
        manual_pending=status.manual_pending,
        unknown=status.unknown,
    )

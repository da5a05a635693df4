from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AppliedMigrationResponse(BaseModel):
    name: str
    applied_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class MigrationStatusResponse(BaseModel):
    applied: List[AppliedMigrationResponse] = Field(default_factory=list)
    pending: List[str] = Field(default_factory=list)
    manual_pending: List[str] = Field(default_factory=list)
    unknown: List[str] = Field(default_factory=list)


class MigrateRequest(BaseModel):
    dry_run: bool = False


class RunReportResponse(BaseModel):
    ok: bool
    applied: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    planned: List[str] = Field(default_factory=list)
    manual: List[str] = Field(default_factory=list)
    base_schema_applied: bool = False
    failed: Optional[str] = None
    error: Optional[str] = None


class ApplyRlsRequest(BaseModel):
    force: bool = False


class PolicyResponse(BaseModel):
    table: str
    column: str
    allow_global: bool


class ApplyRlsResponse(BaseModel):
    policies: List[PolicyResponse] = Field(default_factory=list)
    count: int = 0


class HealthResponse(BaseModel):
    status: str
    version: str
    checks: Dict[str, str] = Field(default_factory=dict)

import pytest
from httpx import ASGITransport, AsyncClient
from unittest.mock import patch

from conftest import make_conn, make_engine
from schemaops.config import settings
from schemaops.database import get_engine
from schemaops.main import app
from schemaops.services.discovery import DependencyCycleError
from schemaops.services.rls import PolicyTarget
from schemaops.services.runner import MigrationStatus, RunReport
from schemaops.services.tracker import AppliedMigration

SECRET = "job-secret"


@pytest.fixture
def db_conn():
    return make_conn()


@pytest.fixture
async def client(db_conn):
    app.dependency_overrides[get_engine] = lambda: make_engine(db_conn)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def job_secret(monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_JOB_SECRET", SECRET)
    return {"X-Internal-Secret": SECRET}


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checks"] == {"db": "ok"}
    assert "version" in data


@pytest.mark.asyncio
async def test_health_reports_database_outage(client, db_conn):
    db_conn.execute.side_effect = OSError("connection refused")
    response = await client.get("/health")
    assert response.status_code == 503
    assert response.json()["checks"]["db"] == "error"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"

    generated = await client.get("/health")
    assert generated.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_migration_status(client):
    status = MigrationStatus(
        applied=[AppliedMigration(name="base-schema", applied_at=None, execution_time_ms=40)],
        pending=["20260201_add_bill_version_column"],
        manual_pending=["20260301_drop_legacy_task_tables"],
    )
    with patch("schemaops.routes.migrations.migration_status", return_value=status):
        response = await client.get("/api/v1/migrations")

    assert response.status_code == 200
    data = response.json()
    assert data["applied"][0]["name"] == "base-schema"
    assert data["pending"] == ["20260201_add_bill_version_column"]
    assert data["manual_pending"] == ["20260301_drop_legacy_task_tables"]
    assert data["unknown"] == []


@pytest.mark.asyncio
async def test_invalid_migration_set_is_a_conflict(client):
    with patch(
        "schemaops.routes.migrations.migration_status",
        side_effect=DependencyCycleError(["a", "b"]),
    ):
        response = await client.get("/api/v1/migrations")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "MIGRATION_SET_INVALID"


# ---------------------------------------------------------------------------
# Internal jobs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_jobs_refuse_without_configured_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_JOB_SECRET", None)
    monkeypatch.setattr(settings, "DEBUG", False)
    response = await client.post("/internal/jobs/migrate")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_jobs_reject_wrong_secret(client, job_secret):
    response = await client.post("/internal/jobs/migrate", headers={"X-Internal-Secret": "nope"})
    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Forbidden"


@pytest.mark.asyncio
async def test_jobs_open_in_debug_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_JOB_SECRET", None)
    monkeypatch.setattr(settings, "DEBUG", True)
    report = RunReport(planned=["20260201_add_bill_version_column"])
    with patch("schemaops.jobs.internal.run_pending", return_value=report):
        response = await client.post("/internal/jobs/migrate", json={"dry_run": True})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_migrate_dry_run(client, job_secret):
    report = RunReport(planned=["20260201_add_bill_version_column"], manual=["20260301_drop"])
    with patch("schemaops.jobs.internal.run_pending", return_value=report) as run_pending, \
         patch("schemaops.jobs.internal.run_migrations") as run_migrations:
        response = await client.post(
            "/internal/jobs/migrate", json={"dry_run": True}, headers=job_secret
        )

    assert response.status_code == 200
    assert response.json()["planned"] == ["20260201_add_bill_version_column"]
    assert run_pending.call_args.kwargs["dry_run"] is True
    run_migrations.assert_not_called()


@pytest.mark.asyncio
async def test_migrate_failure_returns_report_with_500(client, job_secret):
    report = RunReport(
        applied=["20260201_add_bill_version_column"],
        failed="20260205_rental_agreement_org_id",
        error="20260205_rental_agreement_org_id failed [42703]: column does not exist",
    )
    with patch("schemaops.jobs.internal.run_migrations", return_value=report):
        response = await client.post("/internal/jobs/migrate", headers=job_secret)

    assert response.status_code == 500
    data = response.json()
    assert data["ok"] is False
    assert data["failed"] == "20260205_rental_agreement_org_id"
    assert data["applied"] == ["20260201_add_bill_version_column"]


@pytest.mark.asyncio
async def test_apply_rls_job(client, job_secret):
    targets = [
        PolicyTarget("accounts", "tenant_id", allow_global=True),
        PolicyTarget("rental_agreements", "org_id"),
    ]
    with patch("schemaops.jobs.internal.apply_tenant_policies", return_value=targets) as apply:
        response = await client.post(
            "/internal/jobs/apply-rls", json={"force": True}, headers=job_secret
        )

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert data["policies"][1] == {
        "table": "rental_agreements", "column": "org_id", "allow_global": False
    }
    assert apply.call_args.kwargs["force"] is True

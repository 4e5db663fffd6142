import logging
from datetime import date
from itertools import groupby

from fastapi import APIRouter, Depends, HTTPException, Path, status as http_status

from ..batch import BatchRunner
from ..data_interface import JobTeamStore
from ..errors import ConfigurationSkip
from ..models import BatchReport, OptimizationResult, Tenant, TenantRunResult
from ..optimizer import RouteOptimizer
from ..persistence import AssignmentPersister
from .deps import get_api_key, get_batch_runner, get_optimizer, get_persister, get_store, verify_cron_secret
from .models import (
    AssignmentResponse, DispatchDayRequest, OptimizeDayRequest, PersistedRouteResponse, TeamAssignmentsResponse
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_tenant(store: JobTeamStore, tenant_id: str) -> Tenant:
    try:
        tenant = store.get_tenant(tenant_id)
    except ConfigurationSkip as e:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if tenant is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=f"Tenant {tenant_id} not found")
    return tenant


# --- Cron Trigger ---

@router.api_route("/cron/route-dispatch", methods=["GET", "POST"], response_model=BatchReport, tags=["cron"])
def route_dispatch_tick(
    _: None = Depends(verify_cron_secret),
    runner: BatchRunner = Depends(get_batch_runner),
):
    """
    Hourly trigger. Runs every tenant whose local dispatch hour is now.
    Always answers 200; per-tenant failures are entries in `results`.
    """
    report = runner.run()
    if not report.success:
        logger.error("Route dispatch tick failed: %s", report.error)
    logger.info(
        "Route dispatch tick done: %d dispatched, %d skipped/failed",
        report.dispatched_count, len(report.results) - report.dispatched_count,
    )
    return report


# --- Logistics Endpoints ---

@router.post("/logistics/optimize-day", response_model=OptimizationResult, tags=["logistics"])
def optimize_day(
    request: OptimizeDayRequest,
    store: JobTeamStore = Depends(get_store),
    optimizer: RouteOptimizer = Depends(get_optimizer),
    api_key: dict = Depends(get_api_key),
):
    """
    Optimization preview for one tenant-local date. Nothing is persisted or sent.
    """
    tenant = _require_tenant(store, request.tenant_id)
    try:
        return optimizer.optimize(tenant, request.date)
    except ConfigurationSkip as e:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/logistics/dispatch-day", response_model=TenantRunResult, tags=["logistics"])
def dispatch_day(
    request: DispatchDayRequest,
    store: JobTeamStore = Depends(get_store),
    runner: BatchRunner = Depends(get_batch_runner),
    api_key: dict = Depends(get_api_key),
):
    """
    Runs optimize + persist + dispatch for one tenant-local date, ignoring the
    dispatch hour. Failures come back in the result like a cron run.
    """
    tenant = _require_tenant(store, request.tenant_id)
    return runner.run_tenant(tenant, request.date, options=request.options)


@router.get("/logistics/route/{tenant_id}/{route_date}", response_model=PersistedRouteResponse, tags=["logistics"])
def get_persisted_route(
    tenant_id: str = Path(..., description="Tenant ID"),
    route_date: date = Path(..., description="Tenant-local date (YYYY-MM-DD)"),
    persister: AssignmentPersister = Depends(get_persister),
    api_key: dict = Depends(get_api_key),
):
    """
    Persisted assignments for a tenant and date, grouped by team.
    """
    assignments = persister.load(tenant_id, route_date)
    teams = [
        TeamAssignmentsResponse(
            team_id=team_id,
            assignments=[
                AssignmentResponse(job_id=a.job_id, sequence=a.sequence, eta_start=a.eta_start, eta_end=a.eta_end)
                for a in rows
            ],
        )
        for team_id, rows in groupby(assignments, key=lambda a: a.team_id)
    ]
    return PersistedRouteResponse(
        tenant_id=tenant_id,
        date=route_date,
        total_assignments=len(assignments),
        teams=teams,
    )

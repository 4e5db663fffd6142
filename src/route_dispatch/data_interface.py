"""
Read-only Job/Team/Tenant store used by the batch runner and optimizer.

Rows are converted into validated domain models at this boundary, so
undefined values never reach the optimizer. An invalid tenant row is a
ConfigurationSkip for that tenant. An invalid job or team row only takes
that row out of routing: the store reports it back to the caller and the
rest of the tenant's day is routed as usual.
"""

import logging
from datetime import date
from typing import Callable, List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import get_settings
from .db import models as db_models
from .errors import ConfigurationSkip
from .models import CLOSED_JOB_STATUSES, GeoPoint, Job, Team, Tenant, UnassignedJob

logger = logging.getLogger(__name__)


# --- Conversion Functions (DB Row -> Domain Model) ---

def _describe_errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}" for err in exc.errors()
    )

def _db_tenant_to_domain(row: db_models.Tenant) -> Tenant:
    """Converts a tenants row into a Tenant."""
    settings = get_settings()
    try:
        return Tenant(
            id=row.id,
            slug=row.slug,
            name=row.name,
            business_name=row.business_name,
            timezone=row.timezone,
            dispatch_hour=row.dispatch_hour if row.dispatch_hour is not None else settings["default_dispatch_hour"],
            route_optimization_enabled=bool(row.route_optimization_enabled),
            owner_chat_id=row.owner_chat_id,
        )
    except ValidationError as exc:
        raise ConfigurationSkip(f"Tenant {row.slug or row.id} has invalid settings: {_describe_errors(exc)}") from exc

def _db_team_to_domain(row: db_models.Team) -> Team:
    """Converts a teams row into a Team. The depot is required."""
    settings = get_settings()
    if row.depot_lat is None or row.depot_lng is None:
        raise ConfigurationSkip(f'Team "{row.name}" has no depot coordinates, skipped from routing')
    try:
        return Team(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            lead_name=row.lead_name,
            lead_chat_id=row.lead_chat_id,
            depot=GeoPoint(lat=row.depot_lat, lng=row.depot_lng),
            max_jobs_per_day=row.max_jobs_per_day if row.max_jobs_per_day is not None else settings["default_team_capacity"],
            shift_start=row.shift_start,
            active=bool(row.active),
        )
    except ValidationError as exc:
        raise ConfigurationSkip(
            f'Team "{row.name}" is invalid, skipped from routing: {_describe_errors(exc)}'
        ) from exc

def _db_job_to_domain(row: db_models.Job) -> Job:
    """Converts a jobs row into a Job. Coordinates are required."""
    settings = get_settings()
    if row.lat is None or row.lng is None:
        raise ConfigurationSkip(f"Could not geocode address: {row.address or 'no address'}")
    try:
        return Job(
            id=row.id,
            tenant_id=row.tenant_id,
            date=row.date,
            location=GeoPoint(lat=row.lat, lng=row.lng),
            address=row.address or '',
            customer_name=row.customer_name,
            customer_phone=row.customer_phone,
            service_minutes=row.service_minutes if row.service_minutes is not None else settings["default_service_minutes"],
            earliest_arrival=row.earliest_arrival,
            latest_arrival=row.latest_arrival,
            status=row.status,
            service_type=row.service_type,
            preferred_team_id=row.preferred_team_id,
            price=row.price,
        )
    except ValidationError as exc:
        raise ConfigurationSkip(f"Invalid job record: {_describe_errors(exc)}") from exc


# --- Store ---

class JobTeamStore:
    """Loads tenants, eligible jobs and active teams through short-lived sessions."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def list_tenants(self) -> List[Tenant]:
        """
        Returns every active tenant with valid settings.

        Tenants whose rows fail validation are logged and left out of the
        tick; they are a configuration problem, not a runtime failure.
        """
        with self.session_factory() as session:
            rows = session.execute(
                select(db_models.Tenant).where(db_models.Tenant.active.is_(True)).order_by(db_models.Tenant.id)
            ).scalars().all()
            tenants = []
            for row in rows:
                try:
                    tenants.append(_db_tenant_to_domain(row))
                except ConfigurationSkip as exc:
                    logger.warning("Skipping tenant: %s", exc)
            return tenants

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self.session_factory() as session:
            row = session.get(db_models.Tenant, tenant_id)
            return _db_tenant_to_domain(row) if row is not None else None

    def list_eligible_jobs(
        self,
        tenant_id: str,
        target_date: date,
        rejected: Optional[List[UnassignedJob]] = None,
    ) -> List[Job]:
        """
        Routable jobs for (tenant, date) that are not completed or cancelled, ordered by id.

        Args:
            tenant_id: Tenant to load jobs for.
            target_date: Tenant-local calendar date.
            rejected: When given, every eligible row that cannot be routed
                (no coordinates, invalid fields) is appended to it with the reason.

        Returns:
            List of validated Job models.
        """
        with self.session_factory() as session:
            rows = session.execute(
                select(db_models.Job)
                .where(
                    db_models.Job.tenant_id == tenant_id,
                    db_models.Job.date == target_date,
                    db_models.Job.status.notin_(CLOSED_JOB_STATUSES),
                )
                .order_by(db_models.Job.id)
            ).scalars().all()

            jobs = []
            for row in rows:
                try:
                    jobs.append(_db_job_to_domain(row))
                except ConfigurationSkip as exc:
                    logger.warning("[%s %s] Job %s left out of routing: %s", tenant_id, target_date, row.id, exc)
                    if rejected is not None:
                        rejected.append(UnassignedJob(job_id=row.id, reason=str(exc)))
            return jobs

    def list_active_teams(self, tenant_id: str, skipped: Optional[List[str]] = None) -> List[Team]:
        """
        Active teams for the tenant, ordered by id.

        Teams without a depot, or with invalid fields, are left out. When
        `skipped` is given, a warning for each one is appended to it.
        """
        with self.session_factory() as session:
            rows = session.execute(
                select(db_models.Team)
                .where(db_models.Team.tenant_id == tenant_id, db_models.Team.active.is_(True))
                .order_by(db_models.Team.id)
            ).scalars().all()

            teams = []
            for row in rows:
                try:
                    teams.append(_db_team_to_domain(row))
                except ConfigurationSkip as exc:
                    logger.warning("[%s] %s", tenant_id, exc)
                    if skipped is not None:
                        skipped.append(str(exc))
            return teams

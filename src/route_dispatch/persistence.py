"""
Durable storage of optimized routes.

persist() is a full replace keyed by (tenant, date): every prior assignment
row for the key is deleted and the new set inserted in the same transaction,
so a stale run can never survive next to a new one and a repeated tick only
rewrites the same rows.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Callable, Dict, List

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import models as db_models
from .errors import PersistenceFailure
from .models import OptimizationResult, PersistCounts, RouteAssignment

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def assignments_from_result(result: OptimizationResult) -> List[RouteAssignment]:
    """Flattens the routes of a result into assignment records, ordered by team then sequence."""
    return [
        RouteAssignment(
            tenant_id=result.tenant_id,
            job_id=stop.job_id,
            date=result.date,
            team_id=route.team_id,
            sequence=stop.sequence,
            eta_start=_as_utc(stop.eta.start),
            eta_end=_as_utc(stop.eta.end),
        )
        for route in sorted(result.routes, key=lambda r: r.team_id)
        for stop in sorted(route.stops, key=lambda s: s.sequence)
    ]


def validate_assignments(assignments: List[RouteAssignment]) -> None:
    """
    Checks the assignment set before anything is written.

    Raises:
        PersistenceFailure: If a job appears twice, a team's sequence is not
            exactly 0..k-1, or ETA windows go backwards along a route.
    """
    seen_jobs = set()
    by_team: Dict[int, List[RouteAssignment]] = defaultdict(list)
    for assignment in assignments:
        if assignment.job_id in seen_jobs:
            raise PersistenceFailure(f"Job {assignment.job_id} is assigned more than once")
        seen_jobs.add(assignment.job_id)
        by_team[assignment.team_id].append(assignment)

    for team_id, rows in by_team.items():
        rows.sort(key=lambda a: a.sequence)
        if [a.sequence for a in rows] != list(range(len(rows))):
            raise PersistenceFailure(f"Team {team_id} sequence is not contiguous from 0")
        for prev, cur in zip(rows, rows[1:]):
            if cur.eta_start < prev.eta_start:
                raise PersistenceFailure(f"Team {team_id} ETA goes backwards at sequence {cur.sequence}")
        for a in rows:
            if a.eta_end < a.eta_start:
                raise PersistenceFailure(f"Job {a.job_id} ETA window ends before it starts")


class AssignmentPersister:
    """Replaces a tenant's route assignments for a date in one transaction."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def persist(self, result: OptimizationResult) -> PersistCounts:
        """
        Commits the optimizer's output for (result.tenant_id, result.date).

        Deletes every existing assignment for the key, inserts the new rows,
        stamps each routed job with its team and ETA window and clears those
        stamps on jobs that dropped out of the plan.

        Args:
            result: OptimizationResult to persist.

        Returns:
            PersistCounts with the number of job rows updated and assignment
            rows created.

        Raises:
            PersistenceFailure: If the set is invalid or the transaction fails.
                Nothing from this call is visible afterwards.
        """
        assignments = assignments_from_result(result)
        validate_assignments(assignments)
        return self.replace_assignments(result.tenant_id, result.date, assignments)

    def replace_assignments(self, tenant_id: str, target_date: date, assignments: List[RouteAssignment]) -> PersistCounts:
        now = datetime.now(timezone.utc)
        new_job_ids = [a.job_id for a in assignments]
        counts = PersistCounts()

        session = self.session_factory()
        try:
            session.execute(
                delete(db_models.RouteAssignment).where(
                    db_models.RouteAssignment.tenant_id == tenant_id,
                    db_models.RouteAssignment.date == target_date,
                )
            )
            # Jobs left out of this plan lose their previous stamp
            session.execute(
                update(db_models.Job)
                .where(
                    db_models.Job.tenant_id == tenant_id,
                    db_models.Job.date == target_date,
                    db_models.Job.team_id.is_not(None),
                    db_models.Job.id.notin_(new_job_ids),
                )
                .values(team_id=None, eta_start=None, eta_end=None, updated_at=now)
            )

            for a in assignments:
                updated = session.execute(
                    update(db_models.Job)
                    .where(db_models.Job.id == a.job_id, db_models.Job.tenant_id == tenant_id)
                    .values(team_id=a.team_id, eta_start=a.eta_start, eta_end=a.eta_end, updated_at=now)
                ).rowcount
                if updated != 1:
                    raise PersistenceFailure(f"Job {a.job_id} no longer exists for tenant {tenant_id}")
                counts.jobs_updated += updated

                session.add(db_models.RouteAssignment(
                    tenant_id=tenant_id,
                    job_id=a.job_id,
                    date=target_date,
                    team_id=a.team_id,
                    sequence=a.sequence,
                    eta_start=a.eta_start,
                    eta_end=a.eta_end,
                ))
                counts.assignments_created += 1

            session.commit()
        except PersistenceFailure:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("[%s %s] Assignment replace failed: %s", tenant_id, target_date, e)
            raise PersistenceFailure(f"Could not replace assignments: {e}") from e
        finally:
            session.close()

        logger.info(
            "[%s %s] Persisted %d assignment(s), updated %d job(s)",
            tenant_id, target_date, counts.assignments_created, counts.jobs_updated,
        )
        return counts

    def load(self, tenant_id: str, target_date: date) -> List[RouteAssignment]:
        """Reads the persisted assignment set, ordered by team and sequence."""
        with self.session_factory() as session:
            rows = session.execute(
                select(db_models.RouteAssignment)
                .where(
                    db_models.RouteAssignment.tenant_id == tenant_id,
                    db_models.RouteAssignment.date == target_date,
                )
                .order_by(db_models.RouteAssignment.team_id, db_models.RouteAssignment.sequence)
            ).scalars().all()
            return [
                RouteAssignment(
                    tenant_id=row.tenant_id,
                    job_id=row.job_id,
                    date=row.date,
                    team_id=row.team_id,
                    sequence=row.sequence,
                    eta_start=_as_utc(row.eta_start),
                    eta_end=_as_utc(row.eta_end),
                )
                for row in rows
            ]

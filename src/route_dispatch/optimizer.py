"""
Daily route optimization for one tenant and date.

The optimizer works in four stages:
1. Partition eligible jobs across active teams (nearest depot first, capacity bound)
2. Build each team's travel cost matrix through the DistanceEstimator
3. Order each team's stops with a nearest-neighbour tour improved by 2-opt
4. Walk the final order from the shift start to produce ETA windows

All tie-breaks are total (lower job id, then lower team id) so identical
inputs always reproduce identical routes.
"""

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .config import get_settings
from .errors import ConfigurationSkip
from .models import (
    EtaWindow, Job, OptimizationResult, RouteStop, Team, TeamRoute, Tenant, UnassignedJob
)
from .routing import CostMatrix, DistanceEstimator, haversine_km
from .schedule_gate import TenantScheduleGate

logger = logging.getLogger(__name__)

NO_JOBS_WARNING = "No jobs found for this date"
NO_TEAMS_WARNING = "No active teams with depot locations found"
NO_ROUTABLE_JOBS_WARNING = "No routable jobs for this date (every job failed geocoding or validation)"
CAPACITY_REASON = "All teams at capacity"

# Reversals must beat the current cost by more than this to count
IMPROVEMENT_EPSILON = 1e-9


# --- Partitioning ---

def partition_jobs(jobs: Sequence[Job], teams: Sequence[Team]) -> Tuple[Dict[int, List[Job]], List[Job]]:
    """
    Splits jobs across teams, nearest depot first, respecting team capacity.

    Jobs naming an active preferred team go there first while it has room.
    Every remaining (team, job) pair is then ranked by straight-line
    depot-to-job distance and assigned greedily. Straight-line distance keeps
    partitioning free of external calls; the real cost matrix is only built
    per team afterwards.

    Args:
        jobs: Eligible jobs for the date.
        teams: Active teams with depots.

    Returns:
        Tuple of (team id -> jobs sorted by id, jobs that could not be placed).
    """
    capacity = {team.id: team.max_jobs_per_day for team in teams}
    assigned: Dict[int, List[Job]] = {team.id: [] for team in teams}
    placed = set()

    for job in sorted(jobs, key=lambda j: j.id):
        team_id = job.preferred_team_id
        if team_id in capacity and len(assigned[team_id]) < capacity[team_id]:
            assigned[team_id].append(job)
            placed.add(job.id)

    candidates = [
        (haversine_km(team.depot, job.location), job.id, team.id, job)
        for job in jobs if job.id not in placed
        for team in teams
    ]
    candidates.sort(key=lambda c: (c[0], c[1], c[2]))

    for _, job_id, team_id, job in candidates:
        if job_id in placed or len(assigned[team_id]) >= capacity[team_id]:
            continue
        assigned[team_id].append(job)
        placed.add(job_id)

    for team_jobs in assigned.values():
        team_jobs.sort(key=lambda j: j.id)
    unplaced = sorted((job for job in jobs if job.id not in placed), key=lambda j: j.id)
    return assigned, unplaced


# --- Tour Construction ---

def nearest_neighbor_route(matrix: CostMatrix) -> List[int]:
    """
    Greedy tour over matrix indices starting at the depot (index 0).

    Stop indices follow job id order, so taking the lowest index among equal
    costs breaks ties by lower job id.
    """
    route = [0]
    remaining = list(range(1, matrix.size))
    while remaining:
        current = route[-1]
        nearest = min(remaining, key=lambda idx: (matrix.minutes[current][idx], idx))
        route.append(nearest)
        remaining.remove(nearest)
    return route


def _reversal_delta(route: List[int], i: int, j: int, matrix: CostMatrix, symmetric: bool) -> float:
    """Cost change from reversing route[i+1..j] on an open path."""
    cost = matrix.minutes
    a, b = route[i], route[i + 1]
    c = route[j]
    d = route[j + 1] if j + 1 < len(route) else None

    delta = cost[a][c] - cost[a][b]
    if d is not None:
        delta += cost[b][d] - cost[c][d]
    if not symmetric:
        # Interior edges change direction as well
        for k in range(i + 1, j):
            delta += cost[route[k + 1]][route[k]] - cost[route[k]][route[k + 1]]
    return delta


def two_opt(route: List[int], matrix: CostMatrix, max_passes: int) -> List[int]:
    """
    First-improvement 2-opt on an open path anchored at the depot.

    Scans index pairs (i, j), i < j. The first reversal of route[i+1..j]
    with a strictly negative delta is applied and the scan restarts. Stops
    when a full scan finds no improvement or after `max_passes` scans.
    The depot at position 0 never moves.
    """
    route = list(route)
    n = len(route)
    if n < 3:
        return route

    symmetric = matrix.is_symmetric()
    for _ in range(max_passes):
        improved = False
        for i in range(n - 2):
            for j in range(i + 2, n):
                if _reversal_delta(route, i, j, matrix, symmetric) < -IMPROVEMENT_EPSILON:
                    route[i + 1:j + 1] = reversed(route[i + 1:j + 1])
                    improved = True
                    break
            if improved:
                break
        if not improved:
            break
    return route


# --- Optimizer ---

def _parse_clock(value: str) -> time:
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except ValueError as exc:
        raise ConfigurationSkip(f"Invalid shift_start setting {value!r}") from exc


class RouteOptimizer:
    """Produces an OptimizationResult for one (tenant, date)."""

    def __init__(
        self,
        store,
        estimator: DistanceEstimator,
        gate: Optional[TenantScheduleGate] = None,
    ):
        settings = get_settings()
        self.store = store
        self.estimator = estimator
        self.gate = gate or TenantScheduleGate()
        self.default_shift_start = _parse_clock(settings["shift_start"])
        self.eta_slack = timedelta(minutes=settings["eta_slack_minutes"])
        self.max_drive_minutes = settings["max_drive_minutes"]
        self.max_passes = settings["two_opt_max_passes"]
        self.daily_target_revenue = settings["daily_target_revenue"]

    def optimize(self, tenant: Tenant, target_date: date) -> OptimizationResult:
        """
        Optimizes every active team's route for the tenant-local date.

        "No work" conditions never raise: they come back as an empty result
        with assigned_jobs=0 and an explanatory warning.

        Args:
            tenant: Validated tenant record.
            target_date: Tenant-local calendar date to route.

        Returns:
            OptimizationResult with one TeamRoute per team that received jobs.

        Raises:
            ConfigurationSkip: For an unknown timezone or an invalid shift_start setting.
        """
        tz = self.gate.tz_for(tenant)
        result = OptimizationResult(tenant_id=tenant.id, date=target_date, timezone=tz.zone)

        rejected: List[UnassignedJob] = []
        jobs = self.store.list_eligible_jobs(tenant.id, target_date, rejected=rejected)
        teams = self.store.list_active_teams(tenant.id, skipped=result.warnings)
        result.stats.total_jobs = len(jobs) + len(rejected)
        result.stats.total_teams = len(teams)

        if rejected:
            result.unassigned.extend(rejected)
            result.warnings.append(
                f"{len(rejected)} job(s) could not be routed: "
                + "; ".join(f"job {r.job_id}: {r.reason}" for r in rejected)
            )
        for team in teams:
            if not team.lead_chat_id:
                result.warnings.append(
                    f'Team "{team.name}" lead "{team.lead_name or "unknown"}" has no Telegram ID: the route will be '
                    "optimized but the team lead won't receive a Telegram notification"
                )

        if not jobs:
            warning = NO_ROUTABLE_JOBS_WARNING if rejected else NO_JOBS_WARNING
            result.warnings.append(warning)
            logger.info("[%s %s] %s", tenant.slug, target_date, warning)
            return result
        if not teams:
            result.warnings.append(NO_TEAMS_WARNING)
            logger.info("[%s %s] %s", tenant.slug, target_date, NO_TEAMS_WARNING)
            return result

        assigned, unplaced = partition_jobs(jobs, teams)
        if unplaced:
            result.unassigned.extend(UnassignedJob(job_id=job.id, reason=CAPACITY_REASON) for job in unplaced)
            result.warnings.append(
                f"{len(unplaced)} job(s) could not be assigned: {CAPACITY_REASON.lower()} "
                f"(jobs {', '.join(str(job.id) for job in unplaced)})"
            )

        for team in teams:
            team_jobs = assigned[team.id]
            if not team_jobs:
                continue
            route = self._route_team(tenant, team, team_jobs, target_date, tz, result.warnings)
            result.routes.append(route)

        for route in result.routes:
            result.warnings.extend(self._feasibility_warnings(route))

        stats = result.stats
        stats.assigned_jobs = sum(len(route.stops) for route in result.routes)
        stats.active_teams = len(result.routes)
        stats.total_distance_km = round(sum(route.total_distance_km for route in result.routes), 2)
        stats.total_drive_minutes = round(sum(route.total_drive_minutes for route in result.routes), 1)
        stats.total_revenue_estimate = round(sum(route.total_revenue_estimate for route in result.routes), 2)

        logger.info(
            "[%s %s] Optimized %d/%d jobs across %d team(s), %.1f km, %.0f drive min",
            tenant.slug, target_date, stats.assigned_jobs, stats.total_jobs,
            stats.active_teams, stats.total_distance_km, stats.total_drive_minutes,
        )
        return result

    def _route_team(
        self,
        tenant: Tenant,
        team: Team,
        jobs: List[Job],
        target_date: date,
        tz,
        warnings: List[str],
    ) -> TeamRoute:
        points = [team.depot] + [job.location for job in jobs]
        matrix = self.estimator.build_matrix(points)
        if matrix.fallbacks:
            warnings.append(
                f'Team "{team.name}": {matrix.fallbacks} distance lookup(s) used straight-line estimates'
            )

        initial = nearest_neighbor_route(matrix)
        order = two_opt(initial, matrix, self.max_passes)
        logger.debug(
            "[%s %s] Team %s route cost %.1f -> %.1f min",
            tenant.slug, target_date, team.id, matrix.path_cost(initial), matrix.path_cost(order),
        )

        # Localize the wall-clock shift start; pytz needs localize() for correct offsets
        shift_start = team.shift_start or self.default_shift_start
        clock = tz.localize(datetime.combine(target_date, shift_start))
        shift_departure = clock

        stops = []
        previous = 0
        for sequence, index in enumerate(order[1:]):
            job = jobs[index - 1]
            drive = matrix.minutes[previous][index]
            arrival = tz.normalize(clock + timedelta(minutes=round(drive)))
            stops.append(RouteStop(
                job_id=job.id,
                sequence=sequence,
                eta=EtaWindow(start=arrival, end=tz.normalize(arrival + self.eta_slack)),
                drive_minutes=drive,
                distance_km=matrix.distance_km[previous][index],
                service_minutes=job.service_minutes,
                address=job.address,
                customer_name=job.customer_name,
                customer_phone=job.customer_phone,
                service_type=job.service_type,
                price=job.price,
            ))

            if drive > self.max_drive_minutes:
                warnings.append(
                    f'Team "{team.name}": {math.ceil(drive)} min drive to job {job.id} '
                    f"exceeds {self.max_drive_minutes} min"
                )
            window_warning = _time_window_warning(job, arrival)
            if window_warning:
                warnings.append(window_warning)

            clock = tz.normalize(arrival + timedelta(minutes=job.service_minutes))
            previous = index

        return TeamRoute(
            team_id=team.id,
            team_name=team.name,
            lead_name=team.lead_name,
            lead_chat_id=team.lead_chat_id,
            first_departure=shift_departure,
            stops=stops,
        )

    def _feasibility_warnings(self, route: TeamRoute) -> List[str]:
        """Route-level checks: revenue below the daily target and an excessive total drive."""
        warnings = []
        revenue = route.total_revenue_estimate
        if 0 < revenue < self.daily_target_revenue:
            warnings.append(
                f'Team "{route.team_name}": estimated revenue ${revenue:,.0f} '
                f"is below the ${self.daily_target_revenue:,.0f} daily target"
            )
        if route.total_drive_minutes > self.max_drive_minutes * len(route.stops):
            warnings.append(
                f'Team "{route.team_name}": total drive time {math.ceil(route.total_drive_minutes)} min '
                f"seems excessive for {len(route.stops)} stop(s)"
            )
        return warnings


def _time_window_warning(job: Job, arrival: datetime) -> Optional[str]:
    """Warning text when the arrival falls outside the job's own window, else None."""
    local = arrival.time().replace(tzinfo=None)
    if job.earliest_arrival and local < job.earliest_arrival:
        return f"Job {job.id}: arrival {local:%H:%M} is before its earliest arrival {job.earliest_arrival:%H:%M}"
    if job.latest_arrival and local > job.latest_arrival:
        return f"Job {job.id}: arrival {local:%H:%M} is after its latest arrival {job.latest_arrival:%H:%M}"
    return None

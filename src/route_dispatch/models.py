from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field, model_validator

# Alias so fields named "date" do not shadow the type
LocalDate = date


# --- Enums ---

class JobStatus(str, Enum):
    SCHEDULED = 'scheduled'
    ASSIGNED = 'assigned'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

# Jobs in these states are never routed
CLOSED_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED)

class CostSource(str, Enum):
    LIVE = 'live'                    # distance-matrix provider
    STRAIGHT_LINE = 'straight_line'  # haversine estimate


# --- Core Models ---

class GeoPoint(BaseModel):
    """A latitude/longitude pair."""
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

class Tenant(BaseModel):
    """An isolated business unit with its own timezone and dispatch hour."""
    id: str
    slug: str
    name: str
    timezone: Optional[str] = None # Falls back to settings default_timezone
    dispatch_hour: int = Field(default=3, ge=0, le=23)
    route_optimization_enabled: bool = False
    owner_chat_id: Optional[str] = None # Operator summary destination
    business_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.business_name or self.name

class Job(BaseModel):
    """A single job scheduled for one tenant-local calendar day."""
    id: int
    tenant_id: str
    date: LocalDate
    location: GeoPoint
    address: str = ''
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    service_minutes: int = Field(gt=0)
    earliest_arrival: Optional[time] = None # Local time-window constraint
    latest_arrival: Optional[time] = None
    status: JobStatus = JobStatus.SCHEDULED
    service_type: Optional[str] = None
    preferred_team_id: Optional[int] = None # Honored when the team has capacity
    price: Optional[float] = Field(default=None, ge=0) # Quoted price, feeds revenue estimates

    @model_validator(mode='after')
    def check_time_window(self):
        if self.earliest_arrival and self.latest_arrival and self.latest_arrival < self.earliest_arrival:
            raise ValueError("latest_arrival must not be before earliest_arrival")
        return self

    @property
    def is_routable(self) -> bool:
        return self.status not in CLOSED_JOB_STATUSES

class Team(BaseModel):
    """A field team starting its day from a fixed depot."""
    id: int
    tenant_id: str
    name: str
    lead_name: Optional[str] = None
    lead_chat_id: Optional[str] = None # Team lead notification identity
    depot: GeoPoint
    max_jobs_per_day: int = Field(gt=0)
    shift_start: Optional[time] = None # Falls back to settings shift_start
    active: bool = True


# --- Routing Models ---

class TravelCost(BaseModel):
    """Travel between two points, as returned by the DistanceEstimator."""
    distance_km: float = Field(ge=0)
    minutes: float = Field(ge=0)
    source: CostSource = CostSource.LIVE

class LookupOutcome(BaseModel):
    """Result-or-error of a single distance-matrix provider call."""
    cost: Optional[TravelCost] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.cost is not None

class EtaWindow(BaseModel):
    """Arrival interval communicated to the customer."""
    start: datetime
    end: datetime

    @model_validator(mode='after')
    def check_order(self):
        if self.end < self.start:
            raise ValueError("ETA window end must not be before start")
        return self

class RouteStop(BaseModel):
    """One job in a team's ordered route."""
    job_id: int
    sequence: int = Field(ge=0) # 0-based, contiguous per team/date
    eta: EtaWindow
    drive_minutes: float = Field(ge=0) # From previous stop (or depot)
    distance_km: float = Field(ge=0)
    service_minutes: int
    address: str = ''
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    service_type: Optional[str] = None
    price: Optional[float] = None

    @property
    def departure(self) -> datetime:
        return self.eta.start + timedelta(minutes=self.service_minutes)

class TeamRoute(BaseModel):
    """Ordered plan for one team. Totals are derived from the stops and serialized with the route."""
    team_id: int
    team_name: str
    lead_name: Optional[str] = None
    lead_chat_id: Optional[str] = None
    first_departure: Optional[datetime] = None # Shift start at the depot
    stops: List[RouteStop] = Field(default_factory=list)

    @computed_field
    @property
    def total_drive_minutes(self) -> float:
        return float(sum(s.drive_minutes for s in self.stops))

    @computed_field
    @property
    def total_distance_km(self) -> float:
        return float(sum(s.distance_km for s in self.stops))

    @computed_field
    @property
    def total_job_minutes(self) -> int:
        return sum(s.service_minutes for s in self.stops)

    @computed_field
    @property
    def total_revenue_estimate(self) -> float:
        return float(sum(s.price or 0 for s in self.stops))

    @computed_field
    @property
    def last_completion(self) -> Optional[datetime]:
        return self.stops[-1].departure if self.stops else self.first_departure

class UnassignedJob(BaseModel):
    job_id: int
    reason: str

class OptimizationStats(BaseModel):
    total_jobs: int = 0
    assigned_jobs: int = 0
    total_teams: int = 0
    active_teams: int = 0
    total_distance_km: float = 0.0
    total_drive_minutes: float = 0.0
    total_revenue_estimate: float = 0.0

class OptimizationResult(BaseModel):
    """Output of one optimization run for a (tenant, date)."""
    tenant_id: str
    date: LocalDate
    timezone: str
    routes: List[TeamRoute] = Field(default_factory=list)
    unassigned: List[UnassignedJob] = Field(default_factory=list)
    stats: OptimizationStats = Field(default_factory=OptimizationStats)
    warnings: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# --- Persistence & Dispatch Models ---

class RouteAssignment(BaseModel):
    """A persisted (tenant, job, date) -> team/sequence/ETA row."""
    tenant_id: str
    job_id: int
    date: LocalDate
    team_id: int
    sequence: int = Field(ge=0)
    eta_start: datetime
    eta_end: datetime

class PersistCounts(BaseModel):
    jobs_updated: int = 0
    assignments_created: int = 0

class SendOutcome(BaseModel):
    """Result-or-error of a single notification send."""
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

class DispatchError(BaseModel):
    recipient: str
    reason: str

class DispatchOptions(BaseModel):
    send_team_routes: bool = True
    send_customer_sms: bool = True
    dry_run: bool = False # Count sends without calling the senders

class DispatchResult(BaseModel):
    jobs_updated: int = 0
    assignments_created: int = 0
    telegrams_sent: int = 0
    sms_sent: int = 0
    errors: List[DispatchError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


# --- Batch Report Models ---

class TenantRunStats(BaseModel):
    jobs: int = 0
    assignments: int = 0
    team_notifications: int = 0
    customer_notifications: int = 0
    errors: int = 0

class TenantRunResult(BaseModel):
    tenant: str
    date: Optional[LocalDate] = None
    dispatched: bool
    reason: str
    kind: str = 'dispatched' # or an error kind from route_dispatch.errors
    stats: Optional[TenantRunStats] = None
    errors: List[DispatchError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

class BatchReport(BaseModel):
    success: bool = True
    tick: datetime
    error: Optional[str] = None # Set when the tenant list could not be loaded
    results: List[TenantRunResult] = Field(default_factory=list)

    @property
    def dispatched_count(self) -> int:
        return sum(1 for r in self.results if r.dispatched)

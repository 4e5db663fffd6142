from datetime import date, datetime
from typing import List

from pydantic import BaseModel, Field

from ..models import DispatchOptions

LocalDate = date


# --- API Request Models ---

class OptimizeDayRequest(BaseModel):
    """Preview request: optimize one tenant-local date without persisting or sending."""
    tenant_id: str
    date: LocalDate

class DispatchDayRequest(OptimizeDayRequest):
    """Manual run of the full cycle for one tenant-local date."""
    options: DispatchOptions = Field(default_factory=DispatchOptions)


# --- API Response Models ---

class AssignmentResponse(BaseModel):
    job_id: int
    sequence: int
    eta_start: datetime
    eta_end: datetime

class TeamAssignmentsResponse(BaseModel):
    team_id: int
    assignments: List[AssignmentResponse] = Field(default_factory=list)

class PersistedRouteResponse(BaseModel):
    """Persisted assignments for (tenant, date), grouped by team in sequence order."""
    tenant_id: str
    date: LocalDate
    total_assignments: int = 0
    teams: List[TeamAssignmentsResponse] = Field(default_factory=list)

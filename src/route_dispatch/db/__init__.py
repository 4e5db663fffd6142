from route_dispatch.db.models import Base, Tenant, Team, Job, RouteAssignment
from route_dispatch.db.database import engine, SessionLocal

__all__ = [
    'Base',
    'Tenant',
    'Team',
    'Job',
    'RouteAssignment',
    'engine',
    'SessionLocal'
]

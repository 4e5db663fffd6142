from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, Float, ForeignKey, Integer, String, Time, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

from route_dispatch.models import JobStatus

# Define the base class for all models
Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class Tenant(Base):
    """SQLAlchemy model for a tenant and its dispatch settings."""
    __tablename__ = "tenants"

    id = Column(String(64), primary_key=True)
    slug = Column(String(64), nullable=False, unique=True)
    name = Column(String, nullable=False)
    business_name = Column(String, nullable=True)
    timezone = Column(String(64), nullable=True)  # NULL -> default_timezone
    dispatch_hour = Column(Integer, nullable=True)  # NULL -> default_dispatch_hour
    route_optimization_enabled = Column(Boolean, default=False, nullable=False)
    owner_chat_id = Column(String, nullable=True)
    active = Column(Boolean, default=True, nullable=False)

    # Relationships
    teams = relationship("Team", back_populates="tenant")
    jobs = relationship("Job", back_populates="tenant")


class Team(Base):
    """SQLAlchemy model for a field team and its depot."""
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    lead_name = Column(String, nullable=True)
    lead_chat_id = Column(String, nullable=True)
    depot_lat = Column(Float, nullable=True)
    depot_lng = Column(Float, nullable=True)
    max_jobs_per_day = Column(Integer, nullable=True)  # NULL -> default_team_capacity
    shift_start = Column(Time, nullable=True)
    active = Column(Boolean, default=True, nullable=False)

    # Relationships
    tenant = relationship("Tenant", back_populates="teams")
    jobs = relationship("Job", foreign_keys="Job.team_id", back_populates="team")


class Job(Base):
    """SQLAlchemy model for a job scheduled on a tenant-local date."""
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id"), nullable=False)
    date = Column(Date, nullable=False)
    address = Column(String, nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    service_minutes = Column(Integer, nullable=True)  # NULL -> default_service_minutes
    earliest_arrival = Column(Time, nullable=True)
    latest_arrival = Column(Time, nullable=True)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.SCHEDULED)
    service_type = Column(String, nullable=True)
    preferred_team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    price = Column(Float, nullable=True)
    # Written by the assignment persister
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    eta_start = Column(DateTime(timezone=True), nullable=True)
    eta_end = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    tenant = relationship("Tenant", back_populates="jobs")
    team = relationship("Team", foreign_keys=[team_id], back_populates="jobs")

    __table_args__ = (Index("ix_jobs_tenant_date", "tenant_id", "date"),)


class RouteAssignment(Base):
    """SQLAlchemy model for one job's place in a team's route on a date."""
    __tablename__ = "route_assignments"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id"), nullable=False)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False)
    date = Column(Date, nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    eta_start = Column(DateTime(timezone=True), nullable=False)
    eta_end = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    job = relationship("Job")
    team = relationship("Team")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'job_id', 'date', name='uq_assignment_job_date'),
        UniqueConstraint('tenant_id', 'date', 'team_id', 'sequence', name='uq_assignment_team_sequence'),
    )

"""Shared fixtures: in-memory database, seeded "acme" tenant and fake collaborators."""

import threading
from datetime import date, datetime, time, timezone
from typing import Dict, List, Optional, Set

import pytest

from route_dispatch.db import models as db_models
from route_dispatch.db.database import SessionLocal, engine
from route_dispatch.models import (
    CostSource, GeoPoint, Job, JobStatus, LookupOutcome, SendOutcome, Team, Tenant, TravelCost
)
from route_dispatch.routing import DistanceEstimator, straight_line_cost

ACME_DATE = date(2026, 1, 15)
# 03:00 America/Chicago (CST, UTC-6) on ACME_DATE
ACME_TICK = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

NORTH_DEPOT = GeoPoint(lat=41.95, lng=-87.70)
SOUTH_DEPOT = GeoPoint(lat=41.75, lng=-87.65)


# --- Fake Collaborators ---

class FakeProvider:
    """Distance provider answering with the straight-line estimate, failing for chosen pairs."""

    def __init__(self, fail_pairs: Optional[Set] = None, fail_all: bool = False):
        self.fail_pairs = fail_pairs or set()
        self.fail_all = fail_all
        self.calls = 0
        self._lock = threading.Lock()

    def pairwise_cost(self, origin: GeoPoint, destination: GeoPoint) -> LookupOutcome:
        with self._lock:
            self.calls += 1
        key = ((origin.lat, origin.lng), (destination.lat, destination.lng))
        if self.fail_all or key in self.fail_pairs:
            return LookupOutcome(error="timeout: read timed out")
        cost = straight_line_cost(origin, destination)
        return LookupOutcome(cost=TravelCost(distance_km=cost.distance_km, minutes=cost.minutes, source=CostSource.LIVE))


class FakeTeamSender:
    def __init__(self, fail_for: Optional[Set[str]] = None):
        self.fail_for = fail_for or set()
        self.sent: List[Dict[str, str]] = []

    def send_to_team_lead(self, chat_id: str, text: str) -> SendOutcome:
        if chat_id in self.fail_for:
            return SendOutcome(error="Forbidden: bot was blocked by the user")
        self.sent.append({"chat_id": chat_id, "text": text})
        return SendOutcome(message_id=str(len(self.sent)))


class FakeSmsSender:
    def __init__(self, fail_for: Optional[Set[str]] = None):
        self.fail_for = fail_for or set()
        self.sent: List[Dict[str, str]] = []

    def send_sms(self, phone: str, text: str) -> SendOutcome:
        if phone in self.fail_for:
            return SendOutcome(error="SMS API error: 400 - invalid recipient")
        self.sent.append({"phone": phone, "text": text})
        return SendOutcome(message_id=f"sms-{len(self.sent)}")


class FakeStore:
    """In-memory stand-in for JobTeamStore. `rejected_jobs` and `skipped_teams` mimic rows that fail validation."""

    def __init__(self, tenants=None, jobs=None, teams=None):
        self.tenants = tenants or []
        self.jobs = jobs or []
        self.teams = teams or []
        self.rejected_jobs = []
        self.skipped_teams = []

    def list_tenants(self):
        return list(self.tenants)

    def get_tenant(self, tenant_id):
        return next((t for t in self.tenants if t.id == tenant_id), None)

    def list_eligible_jobs(self, tenant_id, target_date, rejected=None):
        if rejected is not None:
            rejected.extend(self.rejected_jobs)
        return [j for j in self.jobs if j.tenant_id == tenant_id and j.date == target_date and j.is_routable]

    def list_active_teams(self, tenant_id, skipped=None):
        if skipped is not None:
            skipped.extend(self.skipped_teams)
        return [t for t in self.teams if t.tenant_id == tenant_id and t.active]


# --- Domain Fixtures ---

@pytest.fixture
def acme_tenant() -> Tenant:
    return Tenant(
        id="t-acme",
        slug="acme",
        name="Acme Window Co",
        timezone="America/Chicago",
        dispatch_hour=3,
        route_optimization_enabled=True,
    )

@pytest.fixture
def acme_teams() -> List[Team]:
    return [
        Team(id=1, tenant_id="t-acme", name="North Crew", lead_name="Dana", lead_chat_id="1001",
             depot=NORTH_DEPOT, max_jobs_per_day=6),
        Team(id=2, tenant_id="t-acme", name="South Crew", lead_name="Lee", lead_chat_id="1002",
             depot=SOUTH_DEPOT, max_jobs_per_day=6),
    ]

@pytest.fixture
def acme_jobs() -> List[Job]:
    coords = [
        (41.96, -87.71),  # north
        (41.94, -87.68),  # north
        (41.97, -87.69),  # north
        (41.76, -87.64),  # south
        (41.74, -87.66),  # south
    ]
    return [
        Job(
            id=i + 1,
            tenant_id="t-acme",
            date=ACME_DATE,
            location=GeoPoint(lat=lat, lng=lng),
            address=f"{100 + i} Main St",
            customer_name=f"Customer {i + 1}",
            customer_phone=f"+1312555010{i}",
            service_minutes=90,
            service_type="window_cleaning",
        )
        for i, (lat, lng) in enumerate(coords)
    ]

@pytest.fixture
def fake_store(acme_tenant, acme_teams, acme_jobs) -> FakeStore:
    return FakeStore(tenants=[acme_tenant], jobs=acme_jobs, teams=acme_teams)

@pytest.fixture
def live_estimator() -> DistanceEstimator:
    return DistanceEstimator(provider=FakeProvider(), max_concurrency=4)

@pytest.fixture
def team_sender() -> FakeTeamSender:
    return FakeTeamSender()

@pytest.fixture
def sms_sender() -> FakeSmsSender:
    return FakeSmsSender()


# --- Database Fixtures ---

@pytest.fixture
def session_factory():
    """Fresh schema on the shared in-memory engine for every test."""
    db_models.Base.metadata.create_all(bind=engine)
    yield SessionLocal
    db_models.Base.metadata.drop_all(bind=engine)


def seed_acme(session, acme_tenant: Tenant, acme_teams: List[Team], acme_jobs: List[Job]) -> None:
    """Writes the acme tenant, its teams and jobs, plus rows that must never be routed."""
    session.add(db_models.Tenant(
        id=acme_tenant.id,
        slug=acme_tenant.slug,
        name=acme_tenant.name,
        timezone=acme_tenant.timezone,
        dispatch_hour=acme_tenant.dispatch_hour,
        route_optimization_enabled=acme_tenant.route_optimization_enabled,
    ))
    for team in acme_teams:
        session.add(db_models.Team(
            id=team.id, tenant_id=team.tenant_id, name=team.name, lead_name=team.lead_name,
            lead_chat_id=team.lead_chat_id, depot_lat=team.depot.lat, depot_lng=team.depot.lng,
            max_jobs_per_day=team.max_jobs_per_day, shift_start=time(8, 0),
        ))
    session.add(db_models.Team(
        id=3, tenant_id=acme_tenant.id, name="Retired Crew", depot_lat=None, depot_lng=None, active=False,
    ))
    for job in acme_jobs:
        session.add(db_models.Job(
            id=job.id, tenant_id=job.tenant_id, date=job.date, address=job.address,
            lat=job.location.lat, lng=job.location.lng, customer_name=job.customer_name,
            customer_phone=job.customer_phone, service_minutes=job.service_minutes,
            status=JobStatus.SCHEDULED, service_type=job.service_type,
        ))
    # Excluded: closed status, and a different date
    session.add(db_models.Job(
        id=90, tenant_id=acme_tenant.id, date=ACME_DATE, lat=41.9, lng=-87.7, status=JobStatus.COMPLETED,
    ))
    session.add(db_models.Job(
        id=91, tenant_id=acme_tenant.id, date=date(2026, 1, 16), lat=41.9, lng=-87.7, status=JobStatus.SCHEDULED,
    ))
    session.commit()


@pytest.fixture
def seeded_db(session_factory, acme_tenant, acme_teams, acme_jobs):
    with session_factory() as session:
        seed_acme(session, acme_tenant, acme_teams, acme_jobs)
    return session_factory


# --- Factories (test modules are not importable packages, so fakes are handed out as fixtures) ---

@pytest.fixture
def provider_factory():
    return FakeProvider

@pytest.fixture
def store_factory():
    return FakeStore

@pytest.fixture
def team_sender_factory():
    return FakeTeamSender

@pytest.fixture
def sms_sender_factory():
    return FakeSmsSender

@pytest.fixture
def acme_date() -> date:
    return ACME_DATE

@pytest.fixture
def acme_tick() -> datetime:
    return ACME_TICK

"""Tests for per-tick tenant eligibility."""

from datetime import date, datetime, timedelta, timezone

import pytest

from route_dispatch.errors import ConfigurationSkip
from route_dispatch.schedule_gate import TenantScheduleGate


@pytest.fixture
def gate():
    return TenantScheduleGate(default_timezone="America/Chicago")


@pytest.mark.parametrize("tz_name,dispatch_hour", [
    ("America/Chicago", 3),
    ("America/New_York", 0),
    ("Asia/Kolkata", 6),      # half-hour offset
    ("Australia/Sydney", 23),
    ("UTC", 12),
])
def test_gate_fires_exactly_once_per_day(gate, acme_tenant, tz_name, dispatch_hour):
    """Across 24 consecutive UTC hours exactly one tick maps to the dispatch hour."""
    tenant = acme_tenant.model_copy(update={"timezone": tz_name, "dispatch_hour": dispatch_hour})
    start = datetime(2026, 1, 15, 0, 0, tzinfo=timezone.utc)
    hits = [h for h in range(24) if gate.is_eligible(tenant, start + timedelta(hours=h))]
    assert len(hits) == 1


def test_gate_acme_tick(gate, acme_tenant):
    # 09:00 UTC is 03:00 CST
    assert gate.is_eligible(acme_tenant, datetime(2026, 1, 15, 9, tzinfo=timezone.utc))
    assert not gate.is_eligible(acme_tenant, datetime(2026, 1, 15, 8, tzinfo=timezone.utc))


def test_gate_requires_opt_in(gate, acme_tenant):
    tenant = acme_tenant.model_copy(update={"route_optimization_enabled": False})
    assert not gate.is_eligible(tenant, datetime(2026, 1, 15, 9, tzinfo=timezone.utc))


def test_local_date_uses_tenant_timezone(gate, acme_tenant):
    """05:00 UTC on the 15th is still the evening of the 14th in Chicago."""
    now = datetime(2026, 1, 15, 5, tzinfo=timezone.utc)
    assert gate.local_date(acme_tenant, now) == date(2026, 1, 14)
    assert gate.local_date_str(acme_tenant, now) == "2026-01-14"


def test_missing_timezone_uses_default(gate, acme_tenant):
    tenant = acme_tenant.model_copy(update={"timezone": None})
    assert gate.tz_for(tenant).zone == "America/Chicago"
    assert gate.local_hour(tenant, datetime(2026, 1, 15, 9, tzinfo=timezone.utc)) == 3


def test_unknown_timezone_is_configuration_skip(gate, acme_tenant):
    tenant = acme_tenant.model_copy(update={"timezone": "Mars/Olympus_Mons"})
    with pytest.raises(ConfigurationSkip):
        gate.is_eligible(tenant, datetime(2026, 1, 15, 9, tzinfo=timezone.utc))


def test_naive_now_is_rejected(gate, acme_tenant):
    with pytest.raises(ValueError):
        gate.local_hour(acme_tenant, datetime(2026, 1, 15, 9))


def test_dst_spring_forward_skips_missing_hour(gate, acme_tenant):
    """On 2026-03-08 Chicago jumps from 02:00 to 03:00; a 2 AM dispatch hour never occurs."""
    tenant = acme_tenant.model_copy(update={"dispatch_hour": 2})
    start = datetime(2026, 3, 8, 6, 0, tzinfo=timezone.utc)  # local midnight CST
    hits = [h for h in range(24) if gate.is_eligible(tenant, start + timedelta(hours=h))]
    assert hits == []

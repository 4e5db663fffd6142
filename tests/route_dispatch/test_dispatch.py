"""Tests for the dispatch coordinator and message formatting."""

from unittest.mock import MagicMock

import pytest

from route_dispatch.dispatch import DispatchCoordinator
from route_dispatch.models import DispatchOptions, PersistCounts
from route_dispatch.optimizer import RouteOptimizer


@pytest.fixture
def acme_result(fake_store, live_estimator, acme_tenant, acme_date):
    return RouteOptimizer(fake_store, live_estimator).optimize(acme_tenant, acme_date)


@pytest.fixture
def counts():
    return PersistCounts(jobs_updated=5, assignments_created=5)


def test_dispatch_sends_every_route_and_eta(acme_result, counts, acme_tenant, team_sender, sms_sender):
    coordinator = DispatchCoordinator(team_sender, sms_sender)
    result = coordinator.dispatch(acme_result, True, persist_counts=counts, tenant=acme_tenant)

    assert result.telegrams_sent == 2
    assert result.sms_sent == 5
    assert result.errors == []
    assert result.success
    assert result.jobs_updated == 5
    assert result.assignments_created == 5
    assert {m["chat_id"] for m in team_sender.sent} == {"1001", "1002"}
    assert "Good morning, North Crew!" in team_sender.sent[0]["text"]
    assert "Acme Window Co window cleaning is scheduled for today" in sms_sender.sent[0]["text"]


def test_partial_team_failure_does_not_block_other_sends(
    acme_result, counts, team_sender_factory, sms_sender
):
    team_sender = team_sender_factory(fail_for={"1002"})
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True, persist_counts=counts)

    assert result.telegrams_sent == 1
    assert result.sms_sent == 5
    assert len(result.errors) == 1
    assert result.errors[0].recipient == 'team "South Crew"'
    assert "blocked" in result.errors[0].reason
    assert not result.success


def test_customer_sms_failure_is_recorded_per_recipient(acme_result, team_sender, sms_sender_factory):
    sms_sender = sms_sender_factory(fail_for={"+13125550101"})
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True)

    assert result.telegrams_sent == 2
    assert result.sms_sent == 4
    assert [e.recipient for e in result.errors] == ["+13125550101"]


def test_unpersisted_result_is_never_dispatched(acme_result, team_sender, sms_sender):
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, False)

    assert team_sender.sent == []
    assert sms_sender.sent == []
    assert result.telegrams_sent == 0
    assert len(result.errors) == 1
    assert "not persisted" in result.errors[0].reason


def test_missing_contact_details_are_errors(acme_result, team_sender, sms_sender):
    acme_result.routes[0].lead_chat_id = None
    acme_result.routes[1].stops[0].customer_phone = None
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True)

    assert result.telegrams_sent == 1
    assert result.sms_sent == 4
    reasons = sorted(e.reason for e in result.errors)
    assert reasons == ["No customer phone", "Team lead has no chat ID"]


def test_sender_exception_is_captured(acme_result, sms_sender):
    exploding = MagicMock()
    exploding.send_to_team_lead.side_effect = RuntimeError("connection reset")
    result = DispatchCoordinator(exploding, sms_sender).dispatch(acme_result, True)

    assert result.telegrams_sent == 0
    assert result.sms_sent == 5
    assert len(result.errors) == 2
    assert all("connection reset" in e.reason for e in result.errors)


def test_dry_run_counts_without_sending(acme_result, team_sender, sms_sender):
    options = DispatchOptions(dry_run=True)
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True, options=options)

    assert result.telegrams_sent == 2
    assert result.sms_sent == 5
    assert team_sender.sent == []
    assert sms_sender.sent == []


def test_channel_toggles(acme_result, team_sender, sms_sender):
    options = DispatchOptions(send_customer_sms=False)
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True, options=options)
    assert result.telegrams_sent == 2
    assert result.sms_sent == 0

    options = DispatchOptions(send_team_routes=False)
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True, options=options)
    assert result.telegrams_sent == 0
    assert result.sms_sent == 5


def test_owner_summary_is_sent_and_not_counted(acme_result, acme_tenant, team_sender, sms_sender):
    tenant = acme_tenant.model_copy(update={"owner_chat_id": "9000"})
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True, tenant=tenant)

    assert result.telegrams_sent == 2
    summary = [m for m in team_sender.sent if m["chat_id"] == "9000"]
    assert len(summary) == 1
    assert "Logistics Dispatch - 2026-01-15" in summary[0]["text"]


def test_owner_summary_failure_is_not_an_error(acme_result, acme_tenant, team_sender_factory, sms_sender):
    tenant = acme_tenant.model_copy(update={"owner_chat_id": "9000"})
    team_sender = team_sender_factory(fail_for={"9000"})
    result = DispatchCoordinator(team_sender, sms_sender).dispatch(acme_result, True, tenant=tenant)

    assert result.errors == []
    assert result.telegrams_sent == 2

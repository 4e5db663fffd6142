"""
Turns a persisted optimization result into notifications.

Each team with a non-empty route gets one message listing its stops, and each
stop's customer gets one SMS with the ETA window. Every send is independent:
a failure is recorded against its recipient and the rest still go out. There
are no retries within a run.
"""

import logging
from typing import List, Optional

from .errors import NotificationFailure
from .models import (
    DispatchError, DispatchOptions, DispatchResult, OptimizationResult, PersistCounts, SendOutcome, Tenant
)
from .notifications import format_customer_eta, format_owner_summary, format_team_route

logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """Sends team routes and customer ETAs through the configured senders."""

    def __init__(self, team_sender, sms_sender):
        self.team_sender = team_sender
        self.sms_sender = sms_sender

    def _send(self, send, recipient: str, text: str) -> SendOutcome:
        """Calls a sender; anything it raises is turned into a failed outcome."""
        try:
            return send(recipient, text)
        except Exception as e:
            logger.exception("Sender raised for %s", recipient)
            return SendOutcome(error=f"{type(e).__name__}: {e}")

    def dispatch(
        self,
        result: OptimizationResult,
        persisted: bool,
        persist_counts: Optional[PersistCounts] = None,
        options: Optional[DispatchOptions] = None,
        tenant: Optional[Tenant] = None,
    ) -> DispatchResult:
        """
        Notifies team leads and customers for every route in `result`.

        Args:
            result: The optimization result that was just persisted.
            persisted: Must be True. Nothing is sent for an unpersisted plan.
            persist_counts: Counts from the persister, copied into the result.
            options: Channel toggles and dry-run flag.
            tenant: Supplies the business name for customer texts and the
                owner chat for the operator summary.

        Returns:
            DispatchResult with per-channel success totals and one error entry
            per failed recipient.
        """
        options = options or DispatchOptions()
        counts = persist_counts or PersistCounts()
        outcome = DispatchResult(
            jobs_updated=counts.jobs_updated,
            assignments_created=counts.assignments_created,
        )
        label = f"[{result.tenant_id} {result.date}]"

        if not persisted:
            outcome.errors.append(DispatchError(
                recipient=result.tenant_id,
                reason="Assignments were not persisted; dispatch skipped",
            ))
            logger.error("%s Refusing to dispatch unpersisted assignments", label)
            return outcome

        failures: List[NotificationFailure] = []
        business_name = tenant.display_name if tenant else None

        for route in result.routes:
            if not route.stops:
                continue

            if options.send_team_routes:
                if not route.lead_chat_id:
                    failures.append(NotificationFailure(f'team "{route.team_name}"', "Team lead has no chat ID"))
                elif options.dry_run:
                    logger.info("%s DRY RUN: would send route to team %s (%s)", label, route.team_name, route.lead_chat_id)
                    outcome.telegrams_sent += 1
                else:
                    sent = self._send(self.team_sender.send_to_team_lead, route.lead_chat_id, format_team_route(route))
                    if sent.ok:
                        outcome.telegrams_sent += 1
                    else:
                        failures.append(NotificationFailure(f'team "{route.team_name}"', sent.error))

            if not options.send_customer_sms:
                continue
            for stop in route.stops:
                if not stop.customer_phone:
                    failures.append(NotificationFailure(f"job {stop.job_id}", "No customer phone"))
                    continue
                if options.dry_run:
                    logger.info("%s DRY RUN: would text %s", label, stop.customer_phone)
                    outcome.sms_sent += 1
                    continue
                text = format_customer_eta(business_name, stop, route.team_name)
                sent = self._send(self.sms_sender.send_sms, stop.customer_phone, text)
                if sent.ok:
                    outcome.sms_sent += 1
                else:
                    failures.append(NotificationFailure(stop.customer_phone, sent.error))

        for failure in failures:
            logger.warning("%s Notification failed: %s", label, failure)
            outcome.errors.append(DispatchError(recipient=failure.recipient, reason=failure.reason))

        logger.info(
            "%s %sJobs: %d, Assignments: %d, Team routes: %d, SMS: %d, Errors: %d",
            label, "DRY RUN - " if options.dry_run else "", outcome.jobs_updated,
            outcome.assignments_created, outcome.telegrams_sent, outcome.sms_sent, len(outcome.errors),
        )

        if tenant and tenant.owner_chat_id and not options.dry_run:
            self._send_owner_summary(tenant, result, outcome)
        return outcome

    def _send_owner_summary(self, tenant: Tenant, result: OptimizationResult, outcome: DispatchResult) -> None:
        # Operator convenience only: never counted, never fails the dispatch
        sent = self._send(self.team_sender.send_to_team_lead, tenant.owner_chat_id, format_owner_summary(result, outcome))
        if not sent.ok:
            logger.warning("[%s %s] Owner summary failed: %s", tenant.slug, result.date, sent.error)

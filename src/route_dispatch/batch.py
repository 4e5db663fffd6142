"""
Hourly batch: gate every tenant, then optimize, persist and dispatch the eligible ones.

Tenants are independent. Every failure is caught at the tenant boundary and
reported as that tenant's result. Only a failure to load the tenant list
marks the whole batch as unsuccessful.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from .config import get_settings
from .errors import ConfigurationSkip, NoEligibleWorkSkip, RouteDispatchError
from .models import BatchReport, DispatchOptions, PersistCounts, Tenant, TenantRunResult, TenantRunStats

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    One lock per (tenant, date) so optimize+persist+dispatch never interleave for a key.

    Entries exist only while some caller holds or waits for the key, so the
    table does not grow with every date a long-lived process has seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, date], threading.Lock] = {}
        self._holders: Dict[Tuple[str, date], int] = {}

    @contextmanager
    def hold(self, key: Tuple[str, date]):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[key] -= 1
                if not self._holders[key]:
                    del self._holders[key]
                    del self._locks[key]

    def is_held(self, key: Tuple[str, date]) -> bool:
        with self._guard:
            lock = self._locks.get(key)
            return lock is not None and lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by every runner in the process (cron and manual runs alike)
tenant_date_locks = KeyedLocks()


class BatchRunner:
    """Runs the optimize + persist + dispatch cycle for each eligible tenant."""

    def __init__(
        self,
        store,
        gate,
        optimizer,
        persister,
        coordinator,
        concurrency: Optional[int] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.gate = gate
        self.optimizer = optimizer
        self.persister = persister
        self.coordinator = coordinator
        self.concurrency = concurrency or get_settings()["tenant_concurrency"]
        self.locks = locks if locks is not None else tenant_date_locks

    def run(self, now_utc: Optional[datetime] = None) -> BatchReport:
        """
        Processes one tick.

        "Now" is read once and shared by every tenant. Tenants that are not
        opted in or not at their dispatch hour are left out of the report;
        tenants whose configuration is invalid appear as skips.

        Args:
            now_utc: Timezone-aware tick time; defaults to the current UTC time.

        Returns:
            BatchReport with one entry per tenant that was due or misconfigured.
            If the tenant list cannot be loaded, success is False and `error`
            says why.
        """
        now = now_utc or datetime.now(timezone.utc)
        if now.tzinfo is None:
            raise ValueError("now_utc must be timezone-aware.")

        report = BatchReport(tick=now)
        try:
            tenants = self.store.list_tenants()
        except Exception as e:
            logger.exception("Tick %s: could not load tenants", now.isoformat())
            report.success = False
            report.error = f"Could not load tenants: {e}"
            return report

        due: List[Tuple[Tenant, date]] = []
        for tenant in tenants:
            try:
                if not self.gate.is_eligible(tenant, now):
                    continue
                due.append((tenant, self.gate.local_date(tenant, now)))
            except ConfigurationSkip as e:
                logger.warning("[%s] Skipped: %s", tenant.slug, e)
                report.results.append(TenantRunResult(
                    tenant=tenant.slug, dispatched=False, reason=str(e), kind=e.kind,
                ))

        logger.info("Tick %s: %d tenant(s) due for dispatch", now.isoformat(), len(due))
        if not due:
            return report

        workers = max(1, min(self.concurrency, len(due)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            report.results.extend(pool.map(lambda item: self.run_tenant(*item), due))
        return report

    def run_tenant(
        self,
        tenant: Tenant,
        target_date: date,
        options: Optional[DispatchOptions] = None,
    ) -> TenantRunResult:
        """
        Runs one tenant's cycle for a date and converts any failure into a result.

        Persistence always completes before dispatch begins; a plan that
        assigns nothing is never persisted or dispatched. A dry run writes
        nothing: the counts it reports are what a real run would store.
        """
        options = options or DispatchOptions()
        with self.locks.hold((tenant.id, target_date)):
            warnings: List[str] = []
            try:
                result = self.optimizer.optimize(tenant, target_date)
                warnings = result.warnings
                if result.stats.assigned_jobs == 0:
                    raise NoEligibleWorkSkip("; ".join(warnings) or "No jobs could be assigned")

                if options.dry_run:
                    planned = result.stats.assigned_jobs
                    counts = PersistCounts(jobs_updated=planned, assignments_created=planned)
                    logger.info("[%s %s] DRY RUN: would persist %d assignment(s)", tenant.slug, target_date, planned)
                else:
                    counts = self.persister.persist(result)
                dispatched = self.coordinator.dispatch(
                    result, True, persist_counts=counts, options=options, tenant=tenant,
                )
            except RouteDispatchError as e:
                logger.warning("[%s %s] %s: %s", tenant.slug, target_date, e.kind, e)
                return TenantRunResult(
                    tenant=tenant.slug, date=target_date, dispatched=False,
                    reason=str(e), kind=e.kind, warnings=warnings,
                )
            except Exception as e:
                logger.exception("[%s %s] Unexpected failure", tenant.slug, target_date)
                return TenantRunResult(
                    tenant=tenant.slug, date=target_date, dispatched=False,
                    reason=f"Unexpected error: {e}", kind="error", warnings=warnings,
                )

        return TenantRunResult(
            tenant=tenant.slug,
            date=target_date,
            dispatched=True,
            reason=f"Dispatched {result.stats.assigned_jobs} job(s) to {result.stats.active_teams} team(s)",
            stats=TenantRunStats(
                jobs=dispatched.jobs_updated,
                assignments=dispatched.assignments_created,
                team_notifications=dispatched.telegrams_sent,
                customer_notifications=dispatched.sms_sent,
                errors=len(dispatched.errors),
            ),
            errors=dispatched.errors,
            warnings=warnings,
        )

"""
Per-tick tenant eligibility.

A single coarse trigger (hourly) is shared by all tenants. Each tenant runs
its optimize + dispatch cycle when the trigger lands on its configured local
dispatch hour.

Daylight-saving transitions are deliberately not special-cased: on a
spring-forward day the dispatch hour may not exist locally (no dispatch that
day), on a fall-back day it may occur twice. The second run is harmless
because persistence is a full replace and dispatch only re-sends.
"""

import logging
from datetime import date, datetime
from typing import Optional

import pytz

from .config import get_settings
from .errors import ConfigurationSkip
from .models import Tenant

logger = logging.getLogger(__name__)


class TenantScheduleGate:
    """Decides which tenants run this tick, and for which local date."""

    def __init__(self, default_timezone: Optional[str] = None):
        self.default_timezone = default_timezone or get_settings()["default_timezone"]

    def tz_for(self, tenant: Tenant):
        """
        Resolves the tenant's timezone, falling back to the default zone.

        Raises:
            ConfigurationSkip: If the configured zone name is unknown.
        """
        name = tenant.timezone or self.default_timezone
        try:
            return pytz.timezone(name)
        except pytz.UnknownTimeZoneError as exc:
            raise ConfigurationSkip(f"Tenant {tenant.slug} has unknown timezone {name!r}") from exc

    def local_now(self, tenant: Tenant, now_utc: datetime) -> datetime:
        if now_utc.tzinfo is None:
            raise ValueError("now_utc must be timezone-aware.")
        return now_utc.astimezone(self.tz_for(tenant))

    def local_hour(self, tenant: Tenant, now_utc: datetime) -> int:
        return self.local_now(tenant, now_utc).hour

    def local_date(self, tenant: Tenant, now_utc: datetime) -> date:
        """The optimization target date: today's calendar date in the tenant's timezone."""
        return self.local_now(tenant, now_utc).date()

    def local_date_str(self, tenant: Tenant, now_utc: datetime) -> str:
        return self.local_date(tenant, now_utc).isoformat()

    def is_eligible(self, tenant: Tenant, now_utc: datetime) -> bool:
        """
        True iff the tenant opted into route optimization and the local hour
        of `now_utc` equals its dispatch hour.
        """
        if not tenant.route_optimization_enabled:
            return False
        return self.local_hour(tenant, now_utc) == tenant.dispatch_hour

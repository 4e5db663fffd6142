"""
Error taxonomy for the optimize + dispatch cycle.

Every failure a tenant cycle can hit is one of these. The batch runner
catches them at the tenant boundary and turns them into a per-tenant
result entry; none of them fails the batch as a whole.
"""


class RouteDispatchError(Exception):
    """Base class for all route dispatch errors."""

    #: short machine-readable kind used in reports
    kind = "error"


class ConfigurationSkip(RouteDispatchError):
    """Tenant not opted in, or a required setting/record field is missing or invalid."""

    kind = "configuration_skip"


class NoEligibleWorkSkip(RouteDispatchError):
    """Zero eligible jobs or zero active teams for the date. No assignments touched."""

    kind = "no_eligible_work"


class ExternalServiceDegradation(RouteDispatchError):
    """A distance-matrix lookup failed or timed out. The estimator catches it and falls back to a straight-line cost."""

    kind = "external_service_degradation"


class NotificationFailure(RouteDispatchError):
    """A single recipient send failed."""

    kind = "notification_failure"

    def __init__(self, recipient: str, reason: str):
        super().__init__(f"{recipient}: {reason}")
        self.recipient = recipient
        self.reason = reason


class PersistenceFailure(RouteDispatchError):
    """The assignment replace could not complete. Fatal for the tenant's cycle."""

    kind = "persistence_failure"

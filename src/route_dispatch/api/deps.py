from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, status

from ..batch import BatchRunner
from ..config import get_settings
from ..data_interface import JobTeamStore
from ..db.database import SessionLocal
from ..dispatch import DispatchCoordinator
from ..notifications import SmsSender, TelegramSender
from ..optimizer import RouteOptimizer
from ..persistence import AssignmentPersister
from ..routing import DistanceEstimator
from ..schedule_gate import TenantScheduleGate


# --- Auth Dependencies ---

async def get_api_key(api_key: str = Header(..., alias="api-key")) -> Dict[str, Any]:
    """
    Validate API key for the logistics endpoints.

    Args:
        api_key: API key extracted from the 'api-key' header

    Returns:
        Dict containing the API key

    Raises:
        HTTPException: If API key is invalid or missing
    """
    settings = get_settings()
    if api_key not in settings["api_keys"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API Key",
        )
    return {"api_key": api_key}


async def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    Checks the `Authorization: Bearer <CRON_SECRET>` header sent by the scheduler.

    Raises:
        HTTPException: 401 if the secret is unset, missing or wrong.
    """
    secret = get_settings()["cron_secret"]
    if not secret or authorization != f"Bearer {secret}":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


# --- Component Dependencies ---
# Overridden in tests through app.dependency_overrides

def get_store() -> JobTeamStore:
    return JobTeamStore(SessionLocal)

def get_gate() -> TenantScheduleGate:
    return TenantScheduleGate()

# The estimator and coordinator own httpx connection pools. One of each is
# shared by every request and closed by close_clients() at app shutdown.
@lru_cache()
def get_estimator() -> DistanceEstimator:
    return DistanceEstimator.from_settings()

def get_optimizer(
    store: JobTeamStore = Depends(get_store),
    estimator: DistanceEstimator = Depends(get_estimator),
    gate: TenantScheduleGate = Depends(get_gate),
) -> RouteOptimizer:
    return RouteOptimizer(store, estimator, gate)

def get_persister() -> AssignmentPersister:
    return AssignmentPersister(SessionLocal)

@lru_cache()
def get_coordinator() -> DispatchCoordinator:
    return DispatchCoordinator(team_sender=TelegramSender(), sms_sender=SmsSender())

def close_clients() -> None:
    """Closes the shared outbound HTTP clients; the next request builds fresh ones."""
    if get_estimator.cache_info().currsize:
        get_estimator().close()
    if get_coordinator.cache_info().currsize:
        coordinator = get_coordinator()
        coordinator.team_sender.close()
        coordinator.sms_sender.close()
    get_estimator.cache_clear()
    get_coordinator.cache_clear()

def get_batch_runner(
    store: JobTeamStore = Depends(get_store),
    gate: TenantScheduleGate = Depends(get_gate),
    optimizer: RouteOptimizer = Depends(get_optimizer),
    persister: AssignmentPersister = Depends(get_persister),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
) -> BatchRunner:
    return BatchRunner(store, gate, optimizer, persister, coordinator)

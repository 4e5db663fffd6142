"""
Travel cost estimation between geographic points.

This module provides:
- Straight-line (Haversine) travel estimates
- A distance-matrix provider client (Google Distance Matrix compatible)
- DistanceEstimator, which prefers live lookups and falls back to the
  straight-line estimate whenever a lookup fails, times out or is missing
- Pairwise cost matrix construction with capped lookup concurrency
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

import httpx

from .config import get_settings
from .errors import ExternalServiceDegradation
from .models import CostSource, GeoPoint, LookupOutcome, TravelCost

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
# Straight-line fallback: ~30 km/h city average plus fixed overhead for lights and turns
FALLBACK_SPEED_KMH = 30.0
FALLBACK_OVERHEAD_MINUTES = 5


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1, lng1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lng2 = math.radians(b.lat), math.radians(b.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def straight_line_cost(a: GeoPoint, b: GeoPoint) -> TravelCost:
    """
    Estimates travel between two points without any external data.

    1. Uses straight-line (Haversine) distance
    2. Assumes 30 km/h average speed plus 5 minutes overhead
    3. Enforces a minimum of 1 minute between distinct points
    4. Returns zero for identical points
    """
    if a == b:
        return TravelCost(distance_km=0.0, minutes=0.0, source=CostSource.STRAIGHT_LINE)

    km = haversine_km(a, b)
    minutes = max(1, round(km / FALLBACK_SPEED_KMH * 60) + FALLBACK_OVERHEAD_MINUTES)
    return TravelCost(distance_km=km, minutes=float(minutes), source=CostSource.STRAIGHT_LINE)


class DistanceMatrixClient:
    """
    Thin client for a Google Distance Matrix compatible endpoint.

    Each call asks for a single origin/destination pair and never raises:
    transport errors, timeouts, non-OK statuses and malformed payloads all come
    back as a LookupOutcome carrying the error text.
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        settings = get_settings()
        self.api_key = api_key
        self.base_url = base_url or settings["distance_matrix_url"]
        timeout_seconds = timeout if timeout is not None else settings["distance_timeout_seconds"]
        # httpx.Client is safe to share across threads
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=5.0))

    def close(self) -> None:
        self._client.close()

    def pairwise_cost(self, origin: GeoPoint, destination: GeoPoint) -> LookupOutcome:
        params = {
            "origins": f"{origin.lat},{origin.lng}",
            "destinations": f"{destination.lat},{destination.lng}",
            "units": "metric",
            "departure_time": "now",
            "key": self.api_key,
        }
        try:
            response = self._client.get(self.base_url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            return LookupOutcome(error=f"timeout: {exc}")
        except httpx.HTTPStatusError as exc:
            return LookupOutcome(error=f"HTTP {exc.response.status_code}")
        except (httpx.HTTPError, ValueError) as exc:
            return LookupOutcome(error=f"request failed: {exc}")

        if data.get("status") != "OK":
            return LookupOutcome(error=f"provider status {data.get('status')}")

        try:
            element = data["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError):
            return LookupOutcome(error="malformed provider response")

        if element.get("status") != "OK":
            return LookupOutcome(error=f"element status {element.get('status')}")

        # Prefer traffic-aware duration when present
        duration = element.get("duration_in_traffic") or element.get("duration") or {}
        distance = element.get("distance") or {}
        if "value" not in duration or "value" not in distance:
            return LookupOutcome(error="provider response missing duration/distance")

        return LookupOutcome(
            cost=TravelCost(
                distance_km=distance["value"] / 1000.0,
                minutes=duration["value"] / 60.0,
                source=CostSource.LIVE,
            )
        )


class CostMatrix:
    """
    Square travel cost matrix over an indexed list of points.

    Index 0 is conventionally the depot. `minutes[i][j]` is the optimization
    cost, `distance_km[i][j]` feeds reporting. `fallbacks` counts the cells
    that had to use the straight-line estimate.
    """

    def __init__(self, size: int):
        self.size = size
        self.minutes: List[List[float]] = [[0.0] * size for _ in range(size)]
        self.distance_km: List[List[float]] = [[0.0] * size for _ in range(size)]
        self.fallbacks = 0
        self.errors: List[str] = []

    def set(self, i: int, j: int, cost: TravelCost) -> None:
        self.minutes[i][j] = cost.minutes
        self.distance_km[i][j] = cost.distance_km

    def is_symmetric(self, tolerance: float = 1e-9) -> bool:
        return all(
            abs(self.minutes[i][j] - self.minutes[j][i]) <= tolerance
            for i in range(self.size)
            for j in range(i + 1, self.size)
        )

    def path_cost(self, route: Sequence[int]) -> float:
        """Sum of edge costs along an open path of matrix indices."""
        return sum(self.minutes[route[k]][route[k + 1]] for k in range(len(route) - 1))


class DistanceEstimator:
    """
    Returns travel costs between points, preferring the live provider.

    Without a provider every cost is a straight-line estimate. With one, each
    lookup that fails (error, timeout, missing element) is replaced by the
    straight-line estimate and recorded so the optimizer can warn about it.
    """

    def __init__(self, provider: Optional[DistanceMatrixClient] = None, max_concurrency: Optional[int] = None):
        self.provider = provider
        self.max_concurrency = max_concurrency or get_settings()["distance_max_concurrency"]

    @classmethod
    def from_settings(cls) -> "DistanceEstimator":
        settings = get_settings()
        api_key = settings["distance_matrix_api_key"]
        if not api_key:
            logger.warning("No distance matrix API key configured; using straight-line estimates")
            return cls(provider=None)
        return cls(provider=DistanceMatrixClient(api_key=api_key))

    def close(self) -> None:
        if self.provider is not None:
            self.provider.close()

    @property
    def is_live(self) -> bool:
        return self.provider is not None

    def _live_cost(self, a: GeoPoint, b: GeoPoint) -> TravelCost:
        """
        Asks the provider for the cost from a to b.

        Raises:
            ExternalServiceDegradation: the lookup failed, timed out or the
                provider itself raised.
        """
        try:
            outcome = self.provider.pairwise_cost(a, b)
        except Exception as exc:
            raise ExternalServiceDegradation(f"provider raised {type(exc).__name__}: {exc}") from exc
        if not outcome.ok:
            raise ExternalServiceDegradation(outcome.error)
        return outcome.cost

    def estimate(self, a: GeoPoint, b: GeoPoint) -> Tuple[TravelCost, Optional[str]]:
        """
        Travel cost from a to b.

        Returns:
            (cost, error) where error is None for a live answer and the
            provider's failure reason when the straight-line fallback was used.
        """
        if a == b:
            return TravelCost(distance_km=0.0, minutes=0.0, source=CostSource.LIVE), None
        if self.provider is None:
            return straight_line_cost(a, b), None

        try:
            return self._live_cost(a, b), None
        except ExternalServiceDegradation as exc:
            return straight_line_cost(a, b), str(exc)

    def build_matrix(self, points: Sequence[GeoPoint]) -> CostMatrix:
        """
        Builds the full pairwise matrix for `points`.

        Off-diagonal lookups run concurrently, capped at max_concurrency.
        Results are written by index, so the matrix does not depend on
        completion order.
        """
        n = len(points)
        matrix = CostMatrix(n)
        pairs = [(i, j) for i in range(n) for j in range(n) if i != j]
        if not pairs:
            return matrix

        def lookup(pair: Tuple[int, int]) -> Tuple[int, int, TravelCost, Optional[str]]:
            i, j = pair
            cost, error = self.estimate(points[i], points[j])
            return i, j, cost, error

        if self.provider is None or self.max_concurrency <= 1:
            results = [lookup(pair) for pair in pairs]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_concurrency, len(pairs))) as pool:
                results = list(pool.map(lookup, pairs))

        errors: Dict[str, int] = {}
        for i, j, cost, error in results:
            matrix.set(i, j, cost)
            if error is not None:
                matrix.fallbacks += 1
                errors[error] = errors.get(error, 0) + 1

        matrix.errors = sorted(errors)
        if matrix.fallbacks:
            logger.warning(
                "Distance lookups failed for %d of %d pairs; used straight-line estimates (%s)",
                matrix.fallbacks, len(pairs), "; ".join(matrix.errors),
            )
        return matrix

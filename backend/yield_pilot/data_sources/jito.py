"""
Jito stake pool stats client
Fetches the latest daily APY datapoint from Jito's public Kobe API.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from yield_pilot.data_sources.base import RateSource, to_float, to_number
from yield_pilot.infrastructure.errors import SourceDataInvalid, SourceUnavailable
from yield_pilot.models import RateObservation, TrackedProtocol

logger = logging.getLogger("RateSource")

JITO_STATS_URL = "https://kobe.mainnet.jito.network/api/v1/stake_pool_stats"


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def stats_request(now: datetime, window_hours: int = 48) -> Dict[str, Any]:
    """Daily buckets over the last window_hours, oldest first"""
    return {
        "bucket_type": "Daily",
        "range_filter": {
            "start": _iso(now - timedelta(hours=window_hours)),
            "end": _iso(now),
        },
        "sort_by": {"field": "BlockTime", "order": "Asc"},
    }


def latest_apy_percent(body: Any, source: str = "jito") -> float:
    """
    Last datapoint of the 'apy' series as a percentage.
    Jito reports decimal fractions: 0.072 -> 7.2
    """
    series = body.get("apy") if isinstance(body, dict) else None
    if not isinstance(series, list) or not series:
        raise SourceDataInvalid(source, "Jito API returned no APY data points")

    latest = series[-1]
    value = latest.get("data") if isinstance(latest, dict) else None
    if value is None:
        raise SourceDataInvalid(source, "Latest APY datapoint has no 'data' value")

    return to_float(to_number(value, source, "apy.data"), source, "apy.data", scale=100)


class JitoApySource(RateSource):
    """
    Live Jito APY.

    Args:
        protocol: tracked protocol this source quotes
        url: stake pool stats endpoint
        window_hours: how far back to ask for daily buckets
        timeout: request timeout in seconds
        http_client: shared AsyncClient (a short-lived one is used otherwise)
    """

    def __init__(
        self,
        protocol: TrackedProtocol,
        url: str = JITO_STATS_URL,
        window_hours: int = 48,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
        clock=None,
    ):
        super().__init__(protocol)
        self.url = url
        self.window_hours = window_hours
        self.timeout = timeout
        self._http_client = http_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch_current_apy(self) -> RateObservation:
        body = stats_request(self._clock(), self.window_hours)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body)
        except httpx.HTTPError as e:
            logger.error(f"Jito API error: {e.__class__.__name__}: {e}")
            raise SourceUnavailable(self.name, f"Jito API unreachable: {e}") from e

        if not response.is_success:
            logger.error(f"Jito API error: {response.status_code} {response.text[:200]}")
            raise SourceUnavailable(
                self.name,
                f"Jito API error: {response.status_code} {response.reason_phrase}",
                response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise SourceDataInvalid(self.name, "Jito API returned a non-JSON body") from e

        apy = latest_apy_percent(payload, self.name)
        logger.info(f"📈 {self.protocol.name} APY: {apy:.2f}%")
        return self._observation(apy)

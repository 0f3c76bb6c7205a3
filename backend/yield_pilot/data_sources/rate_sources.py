"""
Rate source registry
Builds one RateSource per tracked protocol and fetches them together.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import httpx

from yield_pilot.data_sources.base import RateSource, to_float, to_number
from yield_pilot.data_sources.jito import JitoApySource
from yield_pilot.infrastructure.config import RateSourceConfig
from yield_pilot.infrastructure.errors import ConfigurationError, SourceDataInvalid
from yield_pilot.models import RateObservation, TrackedProtocol
from yield_pilot.payments.client import X402Client

logger = logging.getLogger("RateSource")


class PaidApySource(RateSource):
    """APY bought per request from an x402-gated endpoint"""

    def __init__(self, protocol: TrackedProtocol, client: X402Client):
        super().__init__(protocol)
        if not protocol.url:
            raise ConfigurationError(f"Protocol {protocol.name} has no paid endpoint URL", ["url"])
        self.client = client

    async def fetch_current_apy(self) -> RateObservation:
        payload = await self.client.fetch(self.protocol.url)

        # {"protocol": "jito", "apyPercent": 7.2, "source": "..."}
        if not isinstance(payload, dict) or "apyPercent" not in payload:
            raise SourceDataInvalid(self.name, "Paid APY payload has no 'apyPercent'")
        apy = to_float(to_number(payload["apyPercent"], self.name, "apyPercent"), self.name, "apyPercent")

        logger.info(f"📈 {self.protocol.name} APY (paid, {payload.get('source', 'unknown')}): {apy:.2f}%")
        return self._observation(apy)


class FixedApySource(RateSource):
    """Operator-pinned quote for a protocol without a live feed"""

    def __init__(self, protocol: TrackedProtocol):
        super().__init__(protocol)
        if protocol.apy_percent is None:
            raise ConfigurationError(f"Protocol {protocol.name} has no pinned APY", ["apy"])

    async def fetch_current_apy(self) -> RateObservation:
        return self._observation(self.protocol.apy_percent)


def build_rate_sources(
    config: RateSourceConfig,
    client: X402Client,
    http_client: Optional[httpx.AsyncClient] = None,
) -> List[RateSource]:
    """One source per tracked protocol, in configured order"""
    sources: List[RateSource] = []
    for protocol in config.protocols:
        if protocol.source == "jito":
            sources.append(JitoApySource(
                protocol,
                url=protocol.url or config.jito_url,
                window_hours=config.window_hours,
                timeout=config.request_timeout,
                http_client=http_client,
            ))
        elif protocol.source == "x402":
            sources.append(PaidApySource(protocol, client))
        elif protocol.source == "fixed":
            sources.append(FixedApySource(protocol))
        else:
            raise ConfigurationError(f"Unknown rate source '{protocol.source}'", [protocol.source])
    return sources


async def fetch_all(sources: Sequence[RateSource]) -> List[RateObservation]:
    """
    Fetch every source concurrently.
    All or nothing: the first failure in configured order is raised.
    """
    results = await asyncio.gather(
        *(source.fetch_current_apy() for source in sources),
        return_exceptions=True,
    )

    observations: List[RateObservation] = []
    for source, result in zip(sources, results):
        if isinstance(result, BaseException):
            logger.error(f"❌ {source.name} failed: {result}")
            raise result
        observations.append(result)
    return observations

"""
APY API Router
Serves the live Jito APY. Payment is enforced by PaymentGateMiddleware,
so handlers here only run for settled requests.
"""

import logging
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from yield_pilot.data_sources import JitoApySource

logger = logging.getLogger("ApyAPI")

router = APIRouter(tags=["APY"])

# ============================================
# MODELS
# ============================================

class ApyResponse(BaseModel):
    """Paid APY datum"""
    protocol: str
    apyPercent: float
    source: str


class HealthResponse(BaseModel):
    ok: bool
    settlements: dict


# ============================================
# DEPENDENCIES
# ============================================

def get_jito_source(request: Request) -> JitoApySource:
    return request.app.state.jito_source


# ============================================
# ENDPOINTS
# ============================================

@router.get("/apy/jito", response_model=ApyResponse)
async def get_jito_apy(source: JitoApySource = Depends(get_jito_source)):
    """Latest Jito APY in percent. SourceUnavailable / SourceDataInvalid render as 502."""
    observation = await source.fetch_current_apy()
    return ApyResponse(
        protocol=observation.protocol_name,
        apyPercent=observation.apy_percent,
        source=urlparse(source.url).netloc or source.url,
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    gate = request.app.state.payment_gate
    return HealthResponse(ok=True, settlements=gate.ledger.stats())

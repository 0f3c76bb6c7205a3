"""
Paid APY server
FastAPI app serving /apy/jito behind the x402 payment gate.
"""

import logging
from typing import Optional

import httpx
from fastapi import FastAPI

from yield_pilot import __version__
from yield_pilot.api.apy_router import router
from yield_pilot.data_sources import JitoApySource
from yield_pilot.infrastructure.config import YieldPilotConfig
from yield_pilot.infrastructure.errors import register_exception_handlers
from yield_pilot.models import TrackedProtocol
from yield_pilot.payments import Facilitator, PaymentGate, PaymentGateMiddleware, ProtectedResource

logger = logging.getLogger("PaidApyServer")

JITO_PROTOCOL = TrackedProtocol(id=0, name="Jito", source="jito")


def create_app(
    config: YieldPilotConfig,
    facilitator: Facilitator,
    jito_source: Optional[JitoApySource] = None,
    gate: Optional[PaymentGate] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the paid APY app.

    Args:
        config: validated configuration (payments and rates sections are used)
        facilitator: verifies and settles proofs
        jito_source: upstream APY source (built from config when omitted)
        gate: payment gate (built from config when omitted)
        http_client: shared client for the upstream source
    """
    app = FastAPI(
        title="Yield Pilot paid APY API",
        version=__version__,
    )

    if gate is None:
        gate = PaymentGate(
            config.payments,
            facilitator,
            [ProtectedResource("/apy/jito", description="Latest Jito stake pool APY")],
        )
    if jito_source is None:
        jito_source = JitoApySource(
            JITO_PROTOCOL,
            url=config.rates.jito_url,
            window_hours=config.rates.window_hours,
            timeout=config.rates.request_timeout,
            http_client=http_client,
        )

    app.state.payment_gate = gate
    app.state.jito_source = jito_source

    app.add_middleware(PaymentGateMiddleware, gate=gate)
    register_exception_handlers(app)
    app.include_router(router)

    logger.info(f"Protected endpoints: {sorted(gate.resources)}")
    return app

"""
Component wiring
Builds the agent and the gate's collaborators from a validated config.
Capabilities that are not configured get their Unconfigured variant, which
fails loudly on first use instead of at import time.
"""

import logging
from typing import Optional

import httpx

from yield_pilot.agents.yield_pilot_agent import YieldPilotAgent
from yield_pilot.data_sources import build_rate_sources
from yield_pilot.infrastructure.config import PaymentConfig, SecretsManager, YieldPilotConfig
from yield_pilot.infrastructure.ledger import (
    AuthorityCredential,
    LedgerClient,
    UnconfiguredLedgerClient,
    Web3LedgerClient,
)
from yield_pilot.infrastructure.rpc import get_ledger_web3, get_payer_web3
from yield_pilot.models import StateHandle
from yield_pilot.payments import (
    EthAccountPaymentSigner,
    Facilitator,
    HttpFacilitator,
    PaymentSigner,
    UnconfiguredFacilitator,
    UnconfiguredPaymentSigner,
    X402Client,
)
from yield_pilot.services.allocation_state import AllocationStateStore

logger = logging.getLogger("Bootstrap")


def build_ledger(config: YieldPilotConfig) -> LedgerClient:
    if not config.ledger.rpc_url or not config.ledger.program_address:
        return UnconfiguredLedgerClient()
    return Web3LedgerClient(
        get_ledger_web3(config.ledger),
        config.ledger.program_address,
        config.ledger.chain_id,
        finality_timeout=config.ledger.finality_timeout,
        gas_limit=config.ledger.gas_limit,
    )


def build_payment_signer(payments: PaymentConfig, secrets: SecretsManager) -> PaymentSigner:
    key = secrets.get("PAYER_PRIVATE_KEY")
    if not key:
        return UnconfiguredPaymentSigner(payments.network)
    return EthAccountPaymentSigner(
        key,
        payments.network,
        w3=get_payer_web3(payments),
        max_amount=payments.max_payment_amount,
    )


def build_facilitator(
    payments: PaymentConfig,
    secrets: SecretsManager,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Facilitator:
    if not payments.facilitator_url:
        return UnconfiguredFacilitator()
    return HttpFacilitator(
        payments.facilitator_url,
        api_key=secrets.get("FACILITATOR_API_KEY"),
        timeout=payments.request_timeout,
        http_client=http_client,
    )


def build_agent(
    config: YieldPilotConfig,
    secrets: SecretsManager,
    ledger: Optional[LedgerClient] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> YieldPilotAgent:
    """Assemble the reconciliation agent. Call config.validate_agent() first."""
    ledger = ledger or build_ledger(config)
    store = AllocationStateStore(
        ledger,
        StateHandle(config.ledger.program_address, config.ledger.state_id),
        call_timeout=config.ledger.call_timeout,
        finality_timeout=config.ledger.finality_timeout,
    )

    client = X402Client(
        build_payment_signer(config.payments, secrets),
        timeout=config.payments.request_timeout,
        http_client=http_client,
    )
    sources = build_rate_sources(config.rates, client, http_client)
    credential = AuthorityCredential.from_private_key(secrets.get("AGENT_PRIVATE_KEY"))

    logger.info(
        f"Agent {credential.address} tracking {len(sources)} protocols "
        f"(threshold {config.policy.threshold_percent}%)"
    )
    return YieldPilotAgent(store, sources, credential, config.policy)

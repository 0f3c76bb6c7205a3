"""
x402 Payment Negotiation Client
Fetch a payment-gated resource, paying at most once per request.

FLOW:
REQUESTING ──200──> FULFILLED
    │
   402
    ↓
PAYMENT_REQUIRED ─> PAYING ─> RETRYING ──200──> FULFILLED
                                  │
                              402 / error
                                  ↓
                               DENIED (PaymentRejected)

Each state is a method returning a Negotiation tagged with the next state.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

import httpx

from yield_pilot.infrastructure.errors import (
    PaymentConstructionFailed,
    PaymentRejected,
    ProtocolViolation,
    TransportError,
)
from yield_pilot.payments.models import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    SCHEME_EXACT,
    PaymentProof,
    PaymentRequirement,
    decode_payment_required,
    decode_settlement,
)
from yield_pilot.payments.signer import PaymentSigner

logger = logging.getLogger("X402Client")


class NegotiationState(str, Enum):
    REQUESTING = "requesting"
    PAYMENT_REQUIRED = "payment_required"
    PAYING = "paying"
    RETRYING = "retrying"
    FULFILLED = "fulfilled"
    DENIED = "denied"


@dataclass
class Negotiation:
    """Result of one state step, tagged with the state it leads to"""
    state: NegotiationState
    url: str
    response: Optional[httpx.Response] = None
    requirement: Optional[PaymentRequirement] = None
    proof: Optional[PaymentProof] = None
    payload: Any = None
    settlement: Optional[dict] = None
    trail: List[NegotiationState] = field(default_factory=list)

    @property
    def paid(self) -> bool:
        return self.proof is not None


class X402Client:
    """
    HTTP client that settles x402 payment requirements automatically.

    Args:
        signer: builds proofs; UnconfiguredPaymentSigner refuses to pay
        timeout: bound on every HTTP request
        http_client: shared AsyncClient (a short-lived one is used otherwise)
    """

    def __init__(
        self,
        signer: PaymentSigner,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.signer = signer
        self.timeout = timeout
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self):
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def fetch(self, url: str, method: str = "GET", json: Any = None) -> Any:
        """Return the decoded resource payload, paying if the server asks."""
        result = await self.negotiate(url, method=method, json=json)
        return result.payload

    async def negotiate(self, url: str, method: str = "GET", json: Any = None) -> Negotiation:
        trail = [NegotiationState.REQUESTING]
        async with self._client() as client:
            step = await self._requesting(client, url, method, json)
            trail.append(step.state)
            if step.state == NegotiationState.FULFILLED:
                step.trail = trail
                return step

            step = self._payment_required(url, step.response)
            trail.append(step.state)

            step = await self._paying(url, step.requirement)
            trail.append(step.state)

            step = await self._retrying(client, url, method, json, step.requirement, step.proof)
            trail.append(step.state)
            step.trail = trail
            return step

    # ===========================================
    # STATES
    # ===========================================

    async def _requesting(self, client: httpx.AsyncClient, url: str, method: str, json: Any) -> Negotiation:
        response = await self._send(client, url, method, json)

        if response.status_code == 402:
            logger.info(f"402 Payment Required from {url}")
            return Negotiation(NegotiationState.PAYMENT_REQUIRED, url, response=response)
        if response.is_success:
            return Negotiation(NegotiationState.FULFILLED, url, response=response, payload=self._decode(url, response))

        raise TransportError(url, f"Unexpected status {response.status_code} from {url}", response.status_code)

    def _payment_required(self, url: str, response: httpx.Response) -> Negotiation:
        try:
            body = response.json()
        except ValueError as e:
            raise ProtocolViolation(f"402 from {url} has no JSON body") from e

        requirements = decode_payment_required(body)
        for requirement in requirements:
            if requirement.scheme == SCHEME_EXACT and requirement.network == self.signer.network:
                return Negotiation(NegotiationState.PAYING, url, response=response, requirement=requirement)

        offered = sorted({r.network for r in requirements})
        raise PaymentConstructionFailed(
            f"No payable requirement for network '{self.signer.network}' (offered: {offered})",
            {"url": url, "offered": offered},
        )

    async def _paying(self, url: str, requirement: PaymentRequirement) -> Negotiation:
        # Signers may read balances over RPC
        loop = asyncio.get_running_loop()
        proof = await loop.run_in_executor(None, self.signer.sign, requirement)
        return Negotiation(NegotiationState.RETRYING, url, requirement=requirement, proof=proof)

    async def _retrying(
        self,
        client: httpx.AsyncClient,
        url: str,
        method: str,
        json: Any,
        requirement: PaymentRequirement,
        proof: PaymentProof,
    ) -> Negotiation:
        response = await self._send(client, url, method, json, headers={PAYMENT_HEADER: proof.encode()})

        if not response.is_success:
            reason = self._rejection_reason(response)
            logger.warning(f"❌ Paid retry to {url} denied ({response.status_code}): {reason}")
            raise PaymentRejected(requirement.resource, reason, response.status_code)

        settlement = None
        header = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if header:
            settlement = decode_settlement(header)
            logger.info(f"✅ Payment settled: {settlement.get('transaction')}")

        return Negotiation(
            NegotiationState.FULFILLED,
            url,
            response=response,
            requirement=requirement,
            proof=proof,
            payload=self._decode(url, response),
            settlement=settlement,
        )

    # ===========================================
    # HELPERS
    # ===========================================

    async def _send(
        self,
        client: httpx.AsyncClient,
        url: str,
        method: str,
        json: Any,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        try:
            return await client.request(method, url, json=json, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise TransportError(url, f"{method} {url} failed: {e.__class__.__name__}: {e}") from e

    @staticmethod
    def _decode(url: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolViolation(f"Resource at {url} is not JSON") from e

    @staticmethod
    def _rejection_reason(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                return str(error.get("message") or error.get("code"))
            if error:
                return str(error)
        return f"HTTP {response.status_code}"

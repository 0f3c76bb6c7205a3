"""
x402 Facilitator client
Remote verification and on-chain settlement of payment proofs.

The gate checks every proof locally first; the facilitator is the party
that actually submits the transfer authorization.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from yield_pilot.infrastructure.errors import ConfigurationError, PaymentInvalid, SettlementFailed
from yield_pilot.payments.models import X402_VERSION, PaymentProof, PaymentRequirement

logger = logging.getLogger("Facilitator")


@dataclass(frozen=True)
class SettlementReceipt:
    transaction: str
    payer: str
    network: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "transaction": self.transaction,
            "payer": self.payer,
            "network": self.network,
        }


class Facilitator(ABC):

    @abstractmethod
    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> None:
        """Raises PaymentInvalid"""

    @abstractmethod
    async def settle(self, proof: PaymentProof, requirement: PaymentRequirement) -> SettlementReceipt:
        """Raises SettlementFailed"""


class UnconfiguredFacilitator(Facilitator):
    """Placeholder that fails loudly when no facilitator is configured"""

    def __init__(self, reason: str = "FACILITATOR_URL is not set"):
        self.reason = reason

    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> None:
        raise ConfigurationError(f"Cannot verify payments: {self.reason}", [self.reason])

    async def settle(self, proof: PaymentProof, requirement: PaymentRequirement) -> SettlementReceipt:
        raise ConfigurationError(f"Cannot settle payments: {self.reason}", [self.reason])


class HttpFacilitator(Facilitator):
    """
    Facilitator reached over HTTP (/verify and /settle).

    Args:
        url: facilitator base URL
        api_key: sent as a Bearer token when set
        timeout: per-request bound
        http_client: shared AsyncClient (a short-lived one is used otherwise)
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http_client = http_client

    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> None:
        try:
            data = await self._post("/verify", proof, requirement)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Facilitator verify failed: {e}")
            raise PaymentInvalid(f"facilitator unreachable ({e.__class__.__name__})") from e

        if not data.get("isValid"):
            reason = data.get("invalidReason") or data.get("error") or "rejected by facilitator"
            logger.warning(f"Facilitator rejected proof {proof.proof_id}: {reason}")
            raise PaymentInvalid(str(reason))

    async def settle(self, proof: PaymentProof, requirement: PaymentRequirement) -> SettlementReceipt:
        try:
            data = await self._post("/settle", proof, requirement)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Facilitator settle failed: {e}")
            raise SettlementFailed(f"facilitator unreachable ({e.__class__.__name__})") from e

        if not data.get("success"):
            # API can return error or errorReason
            reason = data.get("errorReason") or data.get("error") or "Unknown error"
            logger.error(f"Settlement failed for {proof.proof_id}: {reason}")
            raise SettlementFailed(str(reason), data.get("transaction"))

        transaction = str(data.get("transaction") or "")
        logger.info(f"✅ Payment settled! Transaction: {transaction}")
        return SettlementReceipt(
            transaction=transaction,
            payer=str(data.get("payer") or proof.authorization.from_address),
            network=str(data.get("network") or proof.network),
        )

    async def _post(self, path: str, proof: PaymentProof, requirement: PaymentRequirement) -> Dict[str, Any]:
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": proof.to_payload(),
            "paymentRequirements": requirement.to_dict(),
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        if self._http_client is not None:
            response = await self._http_client.post(f"{self.url}{path}", json=body, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.url}{path}", json=body, headers=headers)

        logger.debug(f"Facilitator {path} -> {response.status_code}")
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"facilitator {path} returned {type(data).__name__}")
        return data

"""
x402 Payment Gate
Server side of the pay-per-request handshake, mounted as Starlette middleware.

Flow for a protected path:
1. No X-PAYMENT header -> 402 with a fresh requirement
2. Decode and verify the proof (locally, then with the facilitator)
3. Reserve the proof id (single use), settle through the facilitator
4. Only then run the handler; the response carries X-PAYMENT-RESPONSE
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from yield_pilot.infrastructure.config import PaymentConfig
from yield_pilot.infrastructure.errors import AlreadySettled, PaymentInvalid, SettlementFailed
from yield_pilot.payments.facilitator import Facilitator, SettlementReceipt
from yield_pilot.payments.models import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    SCHEME_EXACT,
    TRANSFER_WITH_AUTHORIZATION_TYPES,
    PaymentProof,
    PaymentRequirement,
    binding_nonce,
    eip712_domain,
    encode_settlement,
    payment_required_body,
)
from yield_pilot.payments.settlement import SettlementLedger
from yield_pilot.sentry_config import capture_payment_breadcrumb

logger = logging.getLogger("PaymentGate")

MAX_ISSUED_REQUIREMENTS = 10_000


@dataclass(frozen=True)
class ProtectedResource:
    path: str
    amount: Optional[str] = None  # atomic units; falls back to the configured price
    description: str = ""


class PaymentGate:
    """
    Issues requirements for protected paths and admits each proof once.

    Issued requirements live in memory until they expire or are settled.
    At most max_issued are kept; the oldest are dropped first.
    """

    def __init__(
        self,
        payment_config: PaymentConfig,
        facilitator: Facilitator,
        resources: Iterable[ProtectedResource],
        ledger: Optional[SettlementLedger] = None,
        clock: Callable[[], float] = time.time,
        max_issued: int = MAX_ISSUED_REQUIREMENTS,
    ):
        self.config = payment_config
        self.facilitator = facilitator
        self.resources: Dict[str, ProtectedResource] = {r.path: r for r in resources}
        self.clock = clock
        self.ledger = ledger or SettlementLedger(clock=clock)
        self.max_issued = max_issued
        self._issued: Dict[str, Tuple[PaymentRequirement, float]] = {}

    def is_protected(self, path: str) -> bool:
        return path in self.resources

    def payment_requirement(self, path: str) -> PaymentRequirement:
        """Issue a fresh requirement for one protected path"""
        resource = self.resources[path]
        self._prune_issued()

        requirement = PaymentRequirement(
            scheme=SCHEME_EXACT,
            network=self.config.network,
            receiver=self.config.receiver,
            amount=resource.amount or self.config.price_amount,
            currency=self.config.currency,
            asset=self.config.asset,
            resource=path,
            requirement_id=secrets.token_hex(16),
            max_timeout_seconds=self.config.max_timeout_seconds,
            description=resource.description,
            asset_name=self.config.asset_name,
            asset_version=self.config.asset_version,
        )
        self._issued[requirement.requirement_id] = (
            requirement,
            self.clock() + self.config.max_timeout_seconds,
        )
        return requirement

    # ===========================================
    # VERIFY / SETTLE
    # ===========================================

    async def verify(self, proof: PaymentProof, path: str) -> PaymentRequirement:
        """Check a proof against the requirement it claims to pay. Raises PaymentInvalid."""
        requirement = self._check_locally(proof, path)
        await self.facilitator.verify(proof, requirement)
        return requirement

    async def settle(self, proof: PaymentProof, requirement: PaymentRequirement) -> SettlementReceipt:
        """Settle a verified proof at most once. Raises AlreadySettled / SettlementFailed."""
        proof_id = proof.proof_id
        await self.ledger.reserve(proof_id, float(proof.authorization.valid_before))

        try:
            receipt = await self.facilitator.settle(proof, requirement)
        except SettlementFailed as e:
            await self.ledger.mark_failed(proof_id, e.reason)
            raise

        await self.ledger.mark_settled(proof_id, receipt.transaction)
        capture_payment_breadcrumb("settled", {"resource": requirement.resource, "transaction": receipt.transaction})
        self._issued.pop(requirement.requirement_id, None)
        return receipt

    def _check_locally(self, proof: PaymentProof, path: str) -> PaymentRequirement:
        if proof.scheme != SCHEME_EXACT:
            raise PaymentInvalid(f"unsupported scheme '{proof.scheme}'")
        if proof.network != self.config.network:
            raise PaymentInvalid(f"wrong network '{proof.network}'")

        issued = self._issued.get(proof.requirement_id)
        now = self.clock()
        if issued is None:
            raise PaymentInvalid("unknown payment requirement")
        requirement, expires_at = issued
        if now >= expires_at:
            raise PaymentInvalid("payment requirement expired")

        if proof.resource != path or requirement.resource != path:
            raise PaymentInvalid("proof was issued for a different resource")

        auth = proof.authorization
        if auth.to.lower() != requirement.receiver.lower():
            raise PaymentInvalid("payment receiver mismatch")
        if int(auth.value) != int(requirement.amount):
            raise PaymentInvalid(f"amount {auth.value} does not match required {requirement.amount}")
        if auth.nonce != binding_nonce(proof.resource, proof.requirement_id, proof.salt):
            raise PaymentInvalid("nonce does not bind this resource and requirement")
        if not auth.valid_after <= now < auth.valid_before:
            raise PaymentInvalid("authorization is outside its validity window")

        signable = encode_typed_data(
            domain_data=eip712_domain(requirement, self.config.chain_id),
            message_types=TRANSFER_WITH_AUTHORIZATION_TYPES,
            message_data=auth.to_message(),
        )
        try:
            signer = Account.recover_message(signable, signature=proof.signature)
        except Exception as e:
            raise PaymentInvalid(f"unreadable signature ({e.__class__.__name__})") from e
        if signer.lower() != auth.from_address.lower():
            raise PaymentInvalid("signature does not match payer")

        return requirement

    def _prune_issued(self) -> None:
        now = self.clock()
        for requirement_id in [rid for rid, (_, exp) in self._issued.items() if exp <= now]:
            del self._issued[requirement_id]
        while self._issued and len(self._issued) >= self.max_issued:
            del self._issued[next(iter(self._issued))]

    # ===========================================
    # REQUEST HANDLING
    # ===========================================

    async def guard(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not self.is_protected(path):
            return await call_next(request)

        header = request.headers.get(PAYMENT_HEADER)
        if not header:
            logger.info(f"💰 402 for {path}")
            return self._payment_required(path)

        try:
            proof = PaymentProof.decode(header)
        except PaymentInvalid as e:
            logger.warning(f"Malformed payment for {path}: {e.reason}")
            return self._payment_required(path, "invalid_payment", e.reason)

        if self.ledger.contains(proof.proof_id):
            logger.warning(f"⚠️ Replayed proof {proof.proof_id} for {path}")
            return self._payment_required(path, "payment_already_settled")

        try:
            requirement = await self.verify(proof, path)
        except PaymentInvalid as e:
            logger.warning(f"Rejected payment for {path}: {e.reason}")
            return self._payment_required(path, "invalid_payment", e.reason)

        try:
            receipt = await self.settle(proof, requirement)
        except AlreadySettled:
            return self._payment_required(path, "payment_already_settled")
        except SettlementFailed as e:
            return self._payment_required(path, "settlement_failed", e.reason)

        logger.info(f"✅ Paid access to {path} (tx {receipt.transaction})")
        response = await call_next(request)
        response.headers[PAYMENT_RESPONSE_HEADER] = encode_settlement(receipt.to_dict())
        return response

    def _payment_required(self, path: str, error: str = "payment_required", reason: str = None) -> JSONResponse:
        body = payment_required_body(self.payment_requirement(path), error)
        if reason:
            body["reason"] = reason
        return JSONResponse(status_code=402, content=body)


class PaymentGateMiddleware(BaseHTTPMiddleware):
    """Runs every request through PaymentGate.guard"""

    def __init__(self, app, gate: PaymentGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next) -> Response:
        return await self.gate.guard(request, call_next)

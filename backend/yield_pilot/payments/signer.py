"""
Payment signers
Build a PaymentProof for exactly one PaymentRequirement.
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from eth_account import Account
from web3 import Web3

from yield_pilot.infrastructure.config import NETWORK_CHAIN_IDS
from yield_pilot.infrastructure.errors import PaymentConstructionFailed
from yield_pilot.payments.models import (
    SCHEME_EXACT,
    TRANSFER_WITH_AUTHORIZATION_TYPES,
    PaymentProof,
    PaymentRequirement,
    TransferAuthorization,
    binding_nonce,
    eip712_domain,
)

logger = logging.getLogger("PaymentSigner")

ERC20_BALANCE_ABI = [{
    "constant": True,
    "inputs": [{"name": "account", "type": "address"}],
    "name": "balanceOf",
    "outputs": [{"name": "", "type": "uint256"}],
    "type": "function"
}]

# Tolerated clock skew between payer and gate
VALID_AFTER_SKEW_SECONDS = 60


class PaymentSigner(ABC):
    network: str

    @abstractmethod
    def sign(self, requirement: PaymentRequirement) -> PaymentProof:
        """Raises PaymentConstructionFailed"""


class UnconfiguredPaymentSigner(PaymentSigner):
    """Used when no payer key is configured; refuses the moment a payment is needed"""

    def __init__(self, network: str = "", reason: str = "no payer key configured"):
        self.network = network
        self.reason = reason

    def sign(self, requirement: PaymentRequirement) -> PaymentProof:
        raise PaymentConstructionFailed(
            f"Cannot pay for {requirement.resource}: {self.reason}",
            {"resource": requirement.resource},
        )


class EthAccountPaymentSigner(PaymentSigner):
    """
    Signs EIP-3009 transfer authorizations with a local key.

    Args:
        private_key: payer key
        network: x402 network name the payer holds funds on
        w3: optional connection used to check the asset balance first
        max_amount: refuse requirements above this many atomic units
    """

    def __init__(
        self,
        private_key: str,
        network: str,
        w3: Optional[Web3] = None,
        max_amount: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.account = Account.from_key(private_key)
        self.network = network
        self.w3 = w3
        self.max_amount = max_amount
        self.clock = clock

    @property
    def address(self) -> str:
        return self.account.address

    def sign(self, requirement: PaymentRequirement) -> PaymentProof:
        if requirement.scheme != SCHEME_EXACT:
            raise PaymentConstructionFailed(f"Unsupported payment scheme '{requirement.scheme}'")
        if requirement.network != self.network:
            raise PaymentConstructionFailed(
                f"Requirement is on '{requirement.network}', payer funds are on '{self.network}'"
            )
        chain_id = NETWORK_CHAIN_IDS.get(requirement.network)
        if chain_id is None:
            raise PaymentConstructionFailed(f"Unknown network '{requirement.network}'")

        amount = int(requirement.amount)
        if self.max_amount is not None and amount > self.max_amount:
            raise PaymentConstructionFailed(
                f"Requested {amount} exceeds payment cap {self.max_amount}",
                {"amount": amount, "max_amount": self.max_amount},
            )
        self._check_funds(requirement, amount)

        salt = secrets.token_hex(16)
        now = int(self.clock())
        authorization = TransferAuthorization(
            from_address=self.account.address,
            to=requirement.receiver,
            value=requirement.amount,
            valid_after=now - VALID_AFTER_SKEW_SECONDS,
            valid_before=now + requirement.max_timeout_seconds,
            nonce=binding_nonce(requirement.resource, requirement.requirement_id, salt),
        )

        try:
            signed = self.account.sign_typed_data(
                eip712_domain(requirement, chain_id),
                TRANSFER_WITH_AUTHORIZATION_TYPES,
                authorization.to_message(),
            )
        except Exception as e:
            raise PaymentConstructionFailed(f"Signing failed: {e}") from e

        logger.info(
            f"💸 Signed {amount} {requirement.currency or 'units'} to {requirement.receiver[:10]}... "
            f"for {requirement.resource}"
        )
        return PaymentProof(
            scheme=requirement.scheme,
            network=requirement.network,
            requirement_id=requirement.requirement_id,
            resource=requirement.resource,
            salt=salt,
            signature="0x" + bytes(signed.signature).hex(),
            authorization=authorization,
        )

    def _check_funds(self, requirement: PaymentRequirement, amount: int) -> None:
        if self.w3 is None:
            return
        try:
            token = self.w3.eth.contract(
                address=Web3.to_checksum_address(requirement.asset),
                abi=ERC20_BALANCE_ABI,
            )
            balance = token.functions.balanceOf(self.account.address).call()
        except Exception as e:
            raise PaymentConstructionFailed(f"Could not read payer balance: {e}") from e
        if balance < amount:
            raise PaymentConstructionFailed(
                f"Insufficient funds: balance {balance} < {amount}",
                {"balance": balance, "amount": amount},
            )

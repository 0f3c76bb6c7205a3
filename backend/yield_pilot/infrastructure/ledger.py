"""
Ledger program client
Reads and transitions the allocation record held by the YieldPilot contract.

The contract owns addressing, signature checks and finality:
- initialize(bytes32 stateId): creates the record with msg.sender as authority
- getState(bytes32 stateId): (authority, currentProtocol, currentApyBps)
- updateYield(bytes32 stateId, uint8 newProtocol, uint16 newApyBps): authority only,
  reverts with Unauthorized otherwise

Protocol id and APY are written by a single call, so a transition is
all-or-nothing from the ledger's point of view.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from typing import Optional

import requests
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from yield_pilot.infrastructure.errors import (
    ConfigurationError,
    StateReadError,
    Unauthorized,
    WriteRejected,
    WriteTimeout,
)
from yield_pilot.models import ZERO_ADDRESS, AllocationRecord, StateHandle, TransactionReceipt

logger = logging.getLogger("Ledger")

YIELD_PILOT_ABI = [
    {
        "inputs": [{"name": "stateId", "type": "bytes32"}],
        "name": "initialize",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "stateId", "type": "bytes32"}],
        "name": "getState",
        "outputs": [
            {"name": "authority", "type": "address"},
            {"name": "currentProtocol", "type": "uint8"},
            {"name": "currentApyBps", "type": "uint16"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "stateId", "type": "bytes32"},
            {"name": "newProtocol", "type": "uint8"},
            {"name": "newApyBps", "type": "uint16"}
        ],
        "name": "updateYield",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {"inputs": [], "name": "Unauthorized", "type": "error"},
]

# 4-byte selector a custom-error revert carries instead of a reason string
UNAUTHORIZED_SELECTOR = "0x" + bytes(Web3.keccak(text="Unauthorized()")[:4]).hex()

GAS_PRICE_BUFFER = 1.2


class AuthorityCredential:
    """Signing key of the allocation authority"""

    def __init__(self, account):
        self.account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "AuthorityCredential":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self.account.address

    def __repr__(self) -> str:
        return f"AuthorityCredential({self.address})"


class LedgerClient(ABC):
    """External ledger collaborator. All calls are blocking."""

    @abstractmethod
    def initialize(self, credential: AuthorityCredential) -> StateHandle:
        ...

    @abstractmethod
    def read(self, handle: StateHandle) -> Optional[AllocationRecord]:
        """Return the record, or None if it was never initialized"""

    @abstractmethod
    def transition(
        self,
        handle: StateHandle,
        protocol_id: int,
        apy_bps: int,
        credential: AuthorityCredential,
    ) -> TransactionReceipt:
        ...


class UnconfiguredLedgerClient(LedgerClient):
    """Stands in when no ledger is configured; fails on first use"""

    def __init__(self, reason: str = "ledger RPC is not configured"):
        self.reason = reason

    def initialize(self, credential):
        raise ConfigurationError(f"Ledger unavailable: {self.reason}")

    def read(self, handle):
        raise ConfigurationError(f"Ledger unavailable: {self.reason}")

    def transition(self, handle, protocol_id, apy_bps, credential):
        raise ConfigurationError(f"Ledger unavailable: {self.reason}")


class Web3LedgerClient(LedgerClient):
    """YieldPilot contract over an EVM JSON-RPC node"""

    def __init__(
        self,
        w3: Web3,
        program_address: str,
        chain_id: int,
        finality_timeout: float = 120.0,
        gas_limit: int = 120000,
    ):
        self.w3 = w3
        self.program_address = Web3.to_checksum_address(program_address)
        self.chain_id = chain_id
        self.finality_timeout = finality_timeout
        self.gas_limit = gas_limit
        self.contract = w3.eth.contract(address=self.program_address, abi=YIELD_PILOT_ABI)

    def read(self, handle: StateHandle) -> Optional[AllocationRecord]:
        try:
            authority, protocol, apy_bps = self.contract.functions.getState(
                HexBytes(handle.state_id)
            ).call()
        except Exception as e:
            raise StateReadError(f"getState failed for {handle}", e) from e

        if authority == ZERO_ADDRESS:
            return None
        return AllocationRecord(
            authority=Web3.to_checksum_address(authority),
            current_protocol_id=int(protocol),
            current_apy_bps=int(apy_bps),
        )

    def initialize(self, credential: AuthorityCredential) -> StateHandle:
        state_id = "0x" + secrets.token_hex(32)
        call = self.contract.functions.initialize(HexBytes(state_id))
        receipt = self._send(call, credential)
        logger.info(f"Initialized state {state_id} in block {receipt.block_number}")
        return StateHandle(program_address=self.program_address, state_id=state_id)

    def transition(
        self,
        handle: StateHandle,
        protocol_id: int,
        apy_bps: int,
        credential: AuthorityCredential,
    ) -> TransactionReceipt:
        call = self.contract.functions.updateYield(HexBytes(handle.state_id), protocol_id, apy_bps)
        return self._send(call, credential)

    def _send(self, call, credential: AuthorityCredential) -> TransactionReceipt:
        sender = credential.address

        # Dry run against pending state
        try:
            call.call({"from": sender})
        except ContractLogicError as e:
            if _is_unauthorized(e):
                raise Unauthorized(expected="<record authority>", actual=sender) from e
            raise WriteRejected(f"Simulation reverted: {e}") from e
        except Exception as e:
            raise WriteRejected(f"Simulation failed: {e}") from e

        try:
            nonce = self.w3.eth.get_transaction_count(sender, "pending")
            tx = call.build_transaction({
                "from": sender,
                "nonce": nonce,
                "gas": self.gas_limit,
                "gasPrice": int(self.w3.eth.gas_price * GAS_PRICE_BUFFER),
                "chainId": self.chain_id,
            })
            signed = credential.account.sign_transaction(tx)
        except Exception as e:
            raise WriteRejected(f"Could not build transaction: {e}") from e

        tx_hash = "0x" + bytes(signed.hash).hex()
        try:
            self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (TimeoutError, requests.exceptions.Timeout) as e:
            # The node may still have accepted it
            raise WriteTimeout(self.finality_timeout, tx_hash) from e
        except Exception as e:
            raise WriteRejected(f"Node rejected transaction: {e}", tx_hash) from e

        logger.info(f"Submitted {tx_hash}, waiting up to {self.finality_timeout}s for receipt")
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.finality_timeout)
        except (TimeExhausted, TimeoutError, requests.exceptions.RequestException) as e:
            raise WriteTimeout(self.finality_timeout, tx_hash) from e

        if receipt["status"] != 1:
            raise WriteRejected("Transaction reverted on-chain", tx_hash)

        return TransactionReceipt(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            status=receipt["status"],
        )


def _is_unauthorized(error: ContractLogicError) -> bool:
    data = error.data if isinstance(error.data, str) else ""
    return "Unauthorized" in str(error) or data.lower().startswith(UNAUTHORIZED_SELECTOR)

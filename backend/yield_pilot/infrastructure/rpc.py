# infrastructure/rpc.py
"""
RPC connections.
Built from explicit config, never from module globals.
"""
from typing import Optional

from web3 import Web3

from yield_pilot.infrastructure.config import LedgerConfig, PaymentConfig


def get_web3(rpc_url: str, timeout: float = 15.0) -> Web3:
    """Get a Web3 instance whose HTTP calls are bounded by timeout."""
    provider = Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
    return Web3(provider)


def get_ledger_web3(ledger: LedgerConfig) -> Web3:
    return get_web3(ledger.rpc_url, ledger.call_timeout)


def get_payer_web3(payments: PaymentConfig) -> Optional[Web3]:
    """Connection on the payment network, used for balance checks. None when not configured."""
    if not payments.rpc_url:
        return None
    return get_web3(payments.rpc_url, payments.request_timeout)

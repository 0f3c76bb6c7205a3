# x402 Payment Module
from .models import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PaymentProof,
    PaymentRequirement,
    TransferAuthorization,
)
from .signer import PaymentSigner, EthAccountPaymentSigner, UnconfiguredPaymentSigner
from .client import X402Client, Negotiation, NegotiationState
from .facilitator import Facilitator, HttpFacilitator, UnconfiguredFacilitator, SettlementReceipt
from .settlement import SettlementLedger, SettlementStatus
from .gate import PaymentGate, PaymentGateMiddleware, ProtectedResource

__all__ = [
    # Messages
    "PAYMENT_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "PaymentProof",
    "PaymentRequirement",
    "TransferAuthorization",

    # Client side
    "PaymentSigner",
    "EthAccountPaymentSigner",
    "UnconfiguredPaymentSigner",
    "X402Client",
    "Negotiation",
    "NegotiationState",

    # Server side
    "Facilitator",
    "HttpFacilitator",
    "UnconfiguredFacilitator",
    "SettlementReceipt",
    "SettlementLedger",
    "SettlementStatus",
    "PaymentGate",
    "PaymentGateMiddleware",
    "ProtectedResource",
]

"""
x402 protocol messages
Payment requirements issued by the gate and payment proofs sent by clients.

Wire shapes:
- 402 body: {"x402Version": 1, "error": str, "accepts": [requirement, ...]}
- X-PAYMENT header: base64(JSON proof)
- X-PAYMENT-RESPONSE header: base64(JSON settlement)

A proof is an EIP-3009 TransferWithAuthorization signed with EIP-712. Its
nonce is keccak256("<resource>|<requirement id>|<salt>"), so the signature
covers the resource path and the requirement the payer was shown.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from web3 import Web3

from yield_pilot.infrastructure.errors import PaymentInvalid, ProtocolViolation

X402_VERSION = 1
_UINT_RE = re.compile(r"[0-9]+")
SCHEME_EXACT = "exact"
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}

REQUIRED_REQUIREMENT_FIELDS = ("scheme", "network", "payTo", "maxAmountRequired", "asset", "resource", "id")


@dataclass(frozen=True)
class PaymentRequirement:
    """What must be paid to unlock one resource path"""
    scheme: str
    network: str
    receiver: str
    amount: str  # atomic units of the asset
    currency: str
    asset: str
    resource: str
    requirement_id: str
    max_timeout_seconds: int = 300
    description: str = ""
    asset_name: str = "USD Coin"
    asset_version: str = "2"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.amount,
            "resource": self.resource,
            "description": self.description,
            "mimeType": "application/json",
            "payTo": self.receiver,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "currency": self.currency,
            "id": self.requirement_id,
            "extra": {"name": self.asset_name, "version": self.asset_version},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PaymentRequirement":
        """Validated decode of one 'accepts' entry. Raises ProtocolViolation."""
        if not isinstance(data, dict):
            raise ProtocolViolation("Payment requirement must be an object")

        missing = [f for f in REQUIRED_REQUIREMENT_FIELDS if not isinstance(data.get(f), str) or not data.get(f)]
        if missing:
            raise ProtocolViolation(f"Payment requirement missing fields: {missing}", {"missing": missing})

        amount = data["maxAmountRequired"]
        if not is_uint_string(amount) or int(amount) <= 0:
            raise ProtocolViolation(f"Payment amount '{amount}' is not a positive integer")
        if not Web3.is_address(data["payTo"]) or not Web3.is_address(data["asset"]):
            raise ProtocolViolation("Payment receiver or asset is not an address")

        timeout = data.get("maxTimeoutSeconds", 300)
        if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0:
            raise ProtocolViolation("maxTimeoutSeconds must be a positive integer")

        extra = data.get("extra") or {}
        if not isinstance(extra, dict):
            raise ProtocolViolation("Payment requirement 'extra' must be an object")

        return cls(
            scheme=data["scheme"],
            network=data["network"],
            receiver=Web3.to_checksum_address(data["payTo"]),
            amount=amount,
            currency=str(data.get("currency") or ""),
            asset=Web3.to_checksum_address(data["asset"]),
            resource=data["resource"],
            requirement_id=data["id"],
            max_timeout_seconds=timeout,
            description=str(data.get("description") or ""),
            asset_name=str(extra.get("name") or "USD Coin"),
            asset_version=str(extra.get("version") or "2"),
        )


def payment_required_body(requirement: PaymentRequirement, error: str = "payment_required") -> Dict[str, Any]:
    return {
        "x402Version": X402_VERSION,
        "error": error,
        "accepts": [requirement.to_dict()],
    }


def decode_payment_required(body: Any) -> List[PaymentRequirement]:
    """Parse a 402 body into requirements. Raises ProtocolViolation."""
    if not isinstance(body, dict):
        raise ProtocolViolation("402 body must be a JSON object")
    accepts = body.get("accepts")
    if not isinstance(accepts, list) or not accepts:
        raise ProtocolViolation("402 body carries no payment requirements")
    return [PaymentRequirement.from_dict(entry) for entry in accepts]


def binding_nonce(resource: str, requirement_id: str, salt: str) -> str:
    digest = Web3.keccak(text=f"{resource}|{requirement_id}|{salt}")
    return "0x" + bytes(digest).hex()


def eip712_domain(requirement: PaymentRequirement, chain_id: int) -> Dict[str, Any]:
    return {
        "name": requirement.asset_name,
        "version": requirement.asset_version,
        "chainId": chain_id,
        "verifyingContract": requirement.asset,
    }


@dataclass(frozen=True)
class TransferAuthorization:
    from_address: str
    to: str
    value: str
    valid_after: int
    valid_before: int
    nonce: str  # 0x-prefixed bytes32

    def to_message(self) -> Dict[str, Any]:
        """EIP-712 message for TransferWithAuthorization"""
        return {
            "from": Web3.to_checksum_address(self.from_address),
            "to": Web3.to_checksum_address(self.to),
            "value": int(self.value),
            "validAfter": self.valid_after,
            "validBefore": self.valid_before,
            "nonce": bytes.fromhex(self.nonce[2:]),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }


@dataclass(frozen=True)
class PaymentProof:
    """Signed, single-use payment for one requirement"""
    scheme: str
    network: str
    requirement_id: str
    resource: str
    salt: str
    signature: str
    authorization: TransferAuthorization
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def proof_id(self) -> str:
        """Identity used for replay protection (payer + nonce)"""
        return f"{self.authorization.from_address.lower()}:{self.authorization.nonce.lower()}"

    def to_payload(self) -> Dict[str, Any]:
        """Payload in the shape facilitators expect"""
        return {
            "x402Version": X402_VERSION,
            "scheme": self.scheme,
            "network": self.network,
            "payload": {
                "signature": self.signature,
                "authorization": self.authorization.to_dict(),
            },
        }

    def encode(self) -> str:
        data = self.to_payload()
        data["requirementId"] = self.requirement_id
        data["resource"] = self.resource
        data["salt"] = self.salt
        return base64.b64encode(json.dumps(data, separators=(",", ":")).encode()).decode()

    @classmethod
    def decode(cls, header: str) -> "PaymentProof":
        """Validated decode of an X-PAYMENT header. Raises PaymentInvalid."""
        try:
            data = json.loads(base64.b64decode(header, validate=True))
        except (binascii.Error, ValueError) as e:
            raise PaymentInvalid(f"malformed payment header ({e.__class__.__name__})") from e
        if not isinstance(data, dict):
            raise PaymentInvalid("payment header is not an object")

        payload = data.get("payload")
        auth = payload.get("authorization") if isinstance(payload, dict) else None
        if not isinstance(auth, dict):
            raise PaymentInvalid("payment header has no authorization")

        try:
            authorization = TransferAuthorization(
                from_address=_address(auth["from"]),
                to=_address(auth["to"]),
                value=_digits(auth["value"]),
                valid_after=int(_digits(auth["validAfter"])),
                valid_before=int(_digits(auth["validBefore"])),
                nonce=_bytes32(auth["nonce"]),
            )
            return cls(
                scheme=_text(data["scheme"]),
                network=_text(data["network"]),
                requirement_id=_text(data["requirementId"]),
                resource=_text(data["resource"]),
                salt=_text(data["salt"]),
                signature=_text(payload["signature"]),
                authorization=authorization,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentInvalid(f"malformed payment field: {e}") from e


def encode_settlement(data: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(data, separators=(",", ":")).encode()).decode()


def decode_settlement(header: str) -> Dict[str, Any]:
    try:
        data = json.loads(base64.b64decode(header, validate=True))
    except (binascii.Error, ValueError) as e:
        raise ProtocolViolation(f"Malformed {PAYMENT_RESPONSE_HEADER} header") from e
    if not isinstance(data, dict):
        raise ProtocolViolation(f"{PAYMENT_RESPONSE_HEADER} must carry an object")
    return data


def _text(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError("expected non-empty string")
    return value


def is_uint_string(value: str) -> bool:
    """Unsigned decimal integer in ASCII digits ("²" and "٣" are not)"""
    return _UINT_RE.fullmatch(value) is not None


def _digits(value: Any) -> str:
    value = str(value)
    if not is_uint_string(value):
        raise ValueError(f"expected unsigned integer, got '{value}'")
    return value


def _address(value: Any) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"expected address, got '{value}'")
    return Web3.to_checksum_address(value)


def _bytes32(value: Any) -> str:
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 66:
        raise ValueError("expected 0x-prefixed bytes32")
    int(value[2:], 16)
    return value.lower()

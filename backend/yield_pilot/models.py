"""
Yield Pilot data model
Allocation record, rate observations and switch decisions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

# Field widths of the on-chain record (uint8 protocol, uint16 bps)
MAX_PROTOCOL_ID = 255
MAX_APY_BPS = 65535

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class TrackedProtocol:
    """A protocol the agent compares, as configured by the operator"""
    id: int
    name: str
    source: str  # jito | x402 | fixed
    url: Optional[str] = None
    apy_percent: Optional[float] = None


@dataclass(frozen=True)
class StateHandle:
    """Address of one allocation record inside the ledger program"""
    program_address: str
    state_id: str  # 0x-prefixed bytes32

    def __str__(self) -> str:
        return f"{self.program_address}/{self.state_id[:10]}..."


@dataclass(frozen=True)
class AllocationRecord:
    """Authoritative allocation as stored by the ledger program"""
    authority: str
    current_protocol_id: int
    current_apy_bps: int

    @property
    def current_apy_percent(self) -> float:
        return self.current_apy_bps / 100.0

    def matches(self, protocol_id: int, apy_bps: int) -> bool:
        return self.current_protocol_id == protocol_id and self.current_apy_bps == apy_bps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authority": self.authority,
            "current_protocol_id": self.current_protocol_id,
            "current_apy_bps": self.current_apy_bps,
            "current_apy_percent": f"{self.current_apy_percent:.2f}%",
        }


@dataclass(frozen=True)
class RateObservation:
    """Current APY of one protocol, fetched fresh every cycle"""
    protocol_id: int
    protocol_name: str
    apy_percent: float
    source: str = ""
    observed_at: datetime = field(default_factory=datetime.now, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol_id": self.protocol_id,
            "protocol_name": self.protocol_name,
            "apy_percent": round(self.apy_percent, 4),
            "source": self.source,
        }


@dataclass(frozen=True)
class SwitchDecision:
    should_switch: bool
    target_protocol_id: int
    target_apy_bps: int
    reason_diff_percent: float
    best: Optional[RateObservation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_switch": self.should_switch,
            "target_protocol_id": self.target_protocol_id,
            "target_apy_bps": self.target_apy_bps,
            "reason_diff_percent": round(self.reason_diff_percent, 4),
        }


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: Optional[int] = None
    status: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"tx_hash": self.tx_hash, "block_number": self.block_number, "status": self.status}


class BpsRounding(str, Enum):
    """Rounding applied when a percentage is written on-chain as basis points"""
    HALF_AWAY_FROM_ZERO = "half_away_from_zero"
    HALF_EVEN = "half_even"

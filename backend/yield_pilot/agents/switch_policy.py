"""
Switch Policy
Pure decision function: should the allocation move, and where to.

No I/O. The same inputs always give the same SwitchDecision.

Comparisons run in Decimal built from each float's shortest repr, so a
4.7% candidate against a 420 bps record is exactly 0.5 points ahead, not
0.5000000000000004. The target is rounded to whole basis points with a
configurable rule (half away from zero by default).
"""

import math
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
from typing import Sequence

from yield_pilot.infrastructure.errors import PolicyError
from yield_pilot.models import (
    MAX_APY_BPS,
    AllocationRecord,
    BpsRounding,
    RateObservation,
    SwitchDecision,
)

DEFAULT_THRESHOLD_PERCENT = 0.5

# ROUND_HALF_UP in decimal rounds halves away from zero
_ROUNDING_MODES = {
    BpsRounding.HALF_AWAY_FROM_ZERO: ROUND_HALF_UP,
    BpsRounding.HALF_EVEN: ROUND_HALF_EVEN,
}


def _dec(value: float) -> Decimal:
    return Decimal(repr(float(value)))


def select_best(candidates: Sequence[RateObservation]) -> RateObservation:
    """Highest APY; the first candidate wins a tie."""
    if not candidates:
        raise PolicyError("No rate observations to decide on")
    best = candidates[0]
    for candidate in candidates[1:]:
        if _dec(candidate.apy_percent) > _dec(best.apy_percent):
            best = candidate
    return best


def percent_to_bps(apy_percent: float, rounding: BpsRounding = BpsRounding.HALF_AWAY_FROM_ZERO) -> int:
    """4.9 -> 490. Raises PolicyError when the value cannot fit a uint16."""
    scaled = _dec(apy_percent) * 100
    if not -1 < scaled < MAX_APY_BPS + 1:
        raise PolicyError(
            f"APY {apy_percent}% does not fit in basis points",
            {"apy_percent": apy_percent, "max": MAX_APY_BPS},
        )
    return int(scaled.quantize(Decimal(1), rounding=_ROUNDING_MODES[BpsRounding(rounding)]))


def decide(
    current: AllocationRecord,
    candidates: Sequence[RateObservation],
    threshold_percent: float = DEFAULT_THRESHOLD_PERCENT,
    rounding: BpsRounding = BpsRounding.HALF_AWAY_FROM_ZERO,
) -> SwitchDecision:
    """
    Decide whether to move the allocation to the best candidate.

    Switches only when the best protocol differs from the current one and
    beats the recorded APY by strictly more than threshold_percent points.
    """
    if not math.isfinite(threshold_percent) or threshold_percent < 0:
        raise PolicyError("Threshold must be a non-negative number", {"threshold": threshold_percent})
    for candidate in candidates:
        if not math.isfinite(candidate.apy_percent):
            raise PolicyError(
                f"Non-finite APY for protocol {candidate.protocol_id}",
                {"protocol_id": candidate.protocol_id},
            )

    best = select_best(candidates)
    diff = _dec(best.apy_percent) - Decimal(current.current_apy_bps) / 100
    should_switch = best.protocol_id != current.current_protocol_id and diff > _dec(threshold_percent)

    if not should_switch:
        return SwitchDecision(
            should_switch=False,
            target_protocol_id=current.current_protocol_id,
            target_apy_bps=current.current_apy_bps,
            reason_diff_percent=float(diff),
            best=best,
        )

    target_bps = percent_to_bps(best.apy_percent, rounding)
    if not 0 <= target_bps <= MAX_APY_BPS:
        raise PolicyError(
            f"Target APY {best.apy_percent}% does not fit in basis points",
            {"target_apy_bps": target_bps, "max": MAX_APY_BPS},
        )

    return SwitchDecision(
        should_switch=True,
        target_protocol_id=best.protocol_id,
        target_apy_bps=target_bps,
        reason_diff_percent=float(diff),
        best=best,
    )

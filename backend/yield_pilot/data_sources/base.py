"""Common interface for APY providers."""

import math
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any

from yield_pilot.infrastructure.errors import SourceDataInvalid
from yield_pilot.models import RateObservation, TrackedProtocol


class RateSource(ABC):
    """One protocol's APY provider. Never substitutes a default for missing data."""

    def __init__(self, protocol: TrackedProtocol):
        self.protocol = protocol

    @property
    def name(self) -> str:
        return f"{self.protocol.name} ({self.protocol.source})"

    @abstractmethod
    async def fetch_current_apy(self) -> RateObservation:
        """Raises SourceUnavailable / SourceDataInvalid"""

    def _observation(self, apy_percent: float) -> RateObservation:
        return RateObservation(
            protocol_id=self.protocol.id,
            protocol_name=self.protocol.name,
            apy_percent=apy_percent,
            source=self.protocol.source,
        )


def to_number(value: Any, source: str, field: str) -> Decimal:
    """Strict numeric decode: booleans, non-numeric strings and inf/nan are rejected"""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise SourceDataInvalid(source, f"{field} is not a number: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise SourceDataInvalid(source, f"{field} is not finite: {value!r}")
    try:
        number = Decimal(repr(value)) if isinstance(value, float) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise SourceDataInvalid(source, f"{field} is not a number: {value!r}") from e
    if not number.is_finite():
        raise SourceDataInvalid(source, f"{field} is not finite: {value!r}")
    return number


def to_float(number: Decimal, source: str, field: str, scale: int = 1) -> float:
    """number * scale as a float; anything past the float range is rejected, never returned as inf"""
    try:
        result = float(number * scale)
    except ArithmeticError as e:
        raise SourceDataInvalid(source, f"{field} is out of range: {number}") from e
    if not math.isfinite(result):
        raise SourceDataInvalid(source, f"{field} is out of range: {number}")
    return result

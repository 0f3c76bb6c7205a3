"""
Rate sources
Live and paid APY lookups for the tracked protocols.
"""

from .base import RateSource
from .jito import JitoApySource
from .rate_sources import FixedApySource, PaidApySource, build_rate_sources, fetch_all

__all__ = [
    "RateSource",
    "JitoApySource",
    "PaidApySource",
    "FixedApySource",
    "build_rate_sources",
    "fetch_all",
]

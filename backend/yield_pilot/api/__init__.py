"""Paid APY API"""

from .apy_router import router
from .server import create_app

__all__ = ["router", "create_app"]

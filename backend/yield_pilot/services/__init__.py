"""
Yield Pilot services
Async access to the allocation record
"""

from .allocation_state import AllocationStateStore

__all__ = ["AllocationStateStore"]

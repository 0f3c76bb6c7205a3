"""Yield Pilot: yield switching agent with x402-gated rate data."""

__version__ = "0.1.0"

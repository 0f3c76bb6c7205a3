"""
Yield Pilot Infrastructure Module
Configuration, errors and ledger access
"""

from .errors import (
    YieldPilotError,
    ConfigurationError,
    SourceUnavailable,
    SourceDataInvalid,
    StateNotFound,
    StateReadError,
    Unauthorized,
    WriteRejected,
    WriteTimeout,
    PolicyError,
    ReconciliationError,
    ProtocolViolation,
    PaymentRejected,
    PaymentConstructionFailed,
    TransportError,
    PaymentInvalid,
    AlreadySettled,
    SettlementFailed,
    ErrorCode,
    register_exception_handlers,
)

from .config import (
    YieldPilotConfig,
    Environment,
    LedgerConfig,
    RateSourceConfig,
    PaymentConfig,
    PolicyConfig,
    SecretsManager,
)

__all__ = [
    # Errors
    "YieldPilotError",
    "ConfigurationError",
    "SourceUnavailable",
    "SourceDataInvalid",
    "StateNotFound",
    "StateReadError",
    "Unauthorized",
    "WriteRejected",
    "WriteTimeout",
    "PolicyError",
    "ReconciliationError",
    "ProtocolViolation",
    "PaymentRejected",
    "PaymentConstructionFailed",
    "TransportError",
    "PaymentInvalid",
    "AlreadySettled",
    "SettlementFailed",
    "ErrorCode",
    "register_exception_handlers",

    # Config
    "YieldPilotConfig",
    "Environment",
    "LedgerConfig",
    "RateSourceConfig",
    "PaymentConfig",
    "PolicyConfig",
    "SecretsManager",
]

"""
Error taxonomy for Yield Pilot
Typed failures for the reconciliation engine and the x402 payment handshake

Features:
- One exception class per failure mode
- Error codes and HTTP status for the paid API surface
- Structured JSON error responses
- FastAPI exception handlers
"""

import logging
import traceback
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("ErrorHandler")


# ============================================
# ERROR CODES
# ============================================

class ErrorCode(str, Enum):
    # Startup
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # Rate sources
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    SOURCE_DATA_INVALID = "SOURCE_DATA_INVALID"

    # Allocation state
    STATE_NOT_FOUND = "STATE_NOT_FOUND"
    STATE_READ_ERROR = "STATE_READ_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    WRITE_REJECTED = "WRITE_REJECTED"
    WRITE_TIMEOUT = "WRITE_TIMEOUT"

    # Decision
    POLICY_ERROR = "POLICY_ERROR"
    RECONCILIATION_FAILED = "RECONCILIATION_FAILED"

    # Payment handshake (client side)
    PROTOCOL_VIOLATION = "PROTOCOL_VIOLATION"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    PAYMENT_CONSTRUCTION_FAILED = "PAYMENT_CONSTRUCTION_FAILED"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"

    # Payment gate (server side)
    PAYMENT_INVALID = "PAYMENT_INVALID"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================
# CUSTOM EXCEPTIONS
# ============================================

class YieldPilotError(Exception):
    """Base exception for Yield Pilot"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Dict = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict:
        return {
            "success": False,
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp.isoformat()
            }
        }


class ConfigurationError(YieldPilotError):
    """Missing or malformed configuration, fatal before any core logic runs"""
    def __init__(self, message: str, problems: Optional[list] = None):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, 500, {"problems": problems or []})
        self.problems = problems or []


class SourceUnavailable(YieldPilotError):
    """Rate provider could not be reached or answered with an error status"""
    def __init__(self, source: str, message: str = None, status_code: int = None):
        details = {"source": source}
        if status_code:
            details["api_status_code"] = status_code
        super().__init__(
            message or f"Rate source '{source}' unavailable",
            ErrorCode.SOURCE_UNAVAILABLE,
            502,
            details
        )


class SourceDataInvalid(YieldPilotError):
    """Rate provider answered but carried no usable datapoint"""
    def __init__(self, source: str, message: str):
        super().__init__(message, ErrorCode.SOURCE_DATA_INVALID, 502, {"source": source})


class StateNotFound(YieldPilotError):
    """Allocation record does not exist on the ledger"""
    def __init__(self, state_id: str):
        super().__init__(
            f"Allocation state '{state_id}' not found",
            ErrorCode.STATE_NOT_FOUND,
            404,
            {"state_id": state_id}
        )


class StateReadError(YieldPilotError):
    """Reading the allocation record failed at the transport level"""
    def __init__(self, message: str, original_error: Exception = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)
        super().__init__(message, ErrorCode.STATE_READ_ERROR, 502, details)


class Unauthorized(YieldPilotError):
    """Credential is not the authority of the allocation record"""
    def __init__(self, expected: str, actual: str):
        super().__init__(
            "Credential does not match the allocation authority",
            ErrorCode.UNAUTHORIZED,
            401,
            {"authority": expected, "credential": actual}
        )


class WriteRejected(YieldPilotError):
    """Ledger refused the state transition"""
    def __init__(self, message: str, tx_hash: str = None):
        details = {}
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, ErrorCode.WRITE_REJECTED, 502, details)
        self.tx_hash = tx_hash


class WriteTimeout(YieldPilotError):
    """Finality of a submitted transition was not observed in time"""
    def __init__(self, timeout: float, tx_hash: str = None):
        details = {"timeout_seconds": timeout}
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(
            f"Transition not confirmed within {timeout}s; outcome unknown",
            ErrorCode.WRITE_TIMEOUT,
            504,
            details
        )
        self.tx_hash = tx_hash


class PolicyError(YieldPilotError):
    """Switch policy got inputs it cannot decide on"""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, ErrorCode.POLICY_ERROR, 500, details)


class ReconciliationError(YieldPilotError):
    """A reconciliation cycle ended in failure"""
    def __init__(self, stage: str, cause: Exception, last_state: Dict = None, recommendation: str = None):
        details = {"stage": stage, "cause": str(cause)}
        if isinstance(cause, YieldPilotError):
            details["cause_code"] = cause.code.value
        if last_state is not None:
            details["last_state"] = last_state
        if recommendation:
            details["recommendation"] = recommendation
        super().__init__(
            f"Reconciliation failed during {stage}: {cause}",
            ErrorCode.RECONCILIATION_FAILED,
            500,
            details
        )
        self.stage = stage
        self.cause = cause


class ProtocolViolation(YieldPilotError):
    """Payment-required response or paid payload did not follow the protocol"""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, ErrorCode.PROTOCOL_VIOLATION, 502, details)


class PaymentRejected(YieldPilotError):
    """Server refused the retried request even though a proof was attached"""
    def __init__(self, resource: str, reason: str = None, status_code: int = 402):
        super().__init__(
            f"Payment for {resource} rejected: {reason or 'unknown reason'}",
            ErrorCode.PAYMENT_REJECTED,
            402,
            {"resource": resource, "reason": reason, "response_status": status_code}
        )
        self.reason = reason


class PaymentConstructionFailed(YieldPilotError):
    """Client could not build a proof for the requirement"""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, ErrorCode.PAYMENT_CONSTRUCTION_FAILED, 402, details)


class TransportError(YieldPilotError):
    """Network failure while talking to a payment-gated resource"""
    def __init__(self, url: str, message: str, status_code: int = None):
        details = {"url": url}
        if status_code:
            details["api_status_code"] = status_code
        super().__init__(message, ErrorCode.TRANSPORT_ERROR, 502, details)


class PaymentInvalid(YieldPilotError):
    """Presented proof failed verification"""
    def __init__(self, reason: str):
        super().__init__(f"Payment invalid: {reason}", ErrorCode.PAYMENT_INVALID, 402, {"reason": reason})
        self.reason = reason


class AlreadySettled(YieldPilotError):
    """Proof has already been presented for settlement"""
    def __init__(self, proof_id: str):
        super().__init__(
            "Payment proof already settled",
            ErrorCode.ALREADY_SETTLED,
            402,
            {"proof_id": proof_id}
        )


class SettlementFailed(YieldPilotError):
    """Facilitator did not settle the payment"""
    def __init__(self, reason: str, transaction: str = None):
        details = {"reason": reason}
        if transaction:
            details["transaction"] = transaction
        super().__init__(f"Settlement failed: {reason}", ErrorCode.SETTLEMENT_FAILED, 402, details)
        self.reason = reason


# ============================================
# FASTAPI EXCEPTION HANDLERS
# ============================================

async def yield_pilot_exception_handler(request: Request, exc: YieldPilotError) -> JSONResponse:
    """Handle YieldPilotError exceptions"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPExceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value if exc.status_code >= 500 else "BAD_REQUEST",
                "message": exc.detail,
                "timestamp": datetime.now().isoformat()
            }
        }
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {traceback.format_exc()}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "timestamp": datetime.now().isoformat()
            }
        }
    )


def register_exception_handlers(app):
    """Register all exception handlers with FastAPI app"""
    app.add_exception_handler(YieldPilotError, yield_pilot_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    logger.info("Exception handlers registered")

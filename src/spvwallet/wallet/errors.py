"""
Send-path errors. Each carries the response code reported to callers.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    ADDRESS_INVALID = "ADDRESS_INVALID"
    AMOUNT_INVALID = "AMOUNT_INVALID"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SendError(Exception):
    code: ErrorCode = ErrorCode.INTERNAL_ERROR


class AmountInvalidError(SendError):
    code = ErrorCode.AMOUNT_INVALID


class AddressInvalidError(SendError):
    code = ErrorCode.ADDRESS_INVALID


class InsufficientFundsError(SendError):
    code = ErrorCode.INSUFFICIENT_FUNDS

    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class SendTimeoutError(SendError):
    """Acceptance was not confirmed in time; the transaction may still propagate."""

    code = ErrorCode.TIMEOUT

    def __init__(self, message: str, txid: str):
        super().__init__(message)
        self.txid = txid


class SubmissionError(SendError):
    code = ErrorCode.INTERNAL_ERROR

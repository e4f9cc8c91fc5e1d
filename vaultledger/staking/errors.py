"""Staking program errors. Codes follow the program's custom error numbering."""

from __future__ import annotations
from typing import Optional

from ..core import LedgerError


class StakingError(LedgerError):
    """Base class for errors raised by the staking program."""
    code = 6999
    default_message = "Staking program error."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"Error {self.code} ({type(self).__name__}): {self.message}"


class Unauthorized(StakingError):
    code = 6000
    default_message = "You are not authorized to perform this action."


class InvalidAmount(StakingError):
    code = 6001
    default_message = "Amount must be greater than zero."


class InvalidWithdraw(StakingError):
    code = 6002
    default_message = "No tokens to withdraw."


class ArithmeticFault(StakingError):
    code = 6003
    default_message = "Arithmetic overflow or underflow."


class CustodyTransferFailed(StakingError):
    """The ledger rejected the transaction built for an instruction."""
    code = 6004
    default_message = "Token transfer failed."


class InvalidFeeRate(StakingError):
    code = 6005
    default_message = "Fee rate must not exceed 10000 basis points."


class AlreadyInitialized(StakingError):
    code = 6006
    default_message = "Vault already initialized for this mint."


class NotInitialized(StakingError):
    code = 6007
    default_message = "Program not initialized for this mint."

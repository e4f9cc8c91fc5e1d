"""
fees.py - Withdrawal fee math

Pure functions over unsigned 64-bit integers. Every operation that could
leave the u64 range raises ArithmeticFault instead of wrapping.

Key Formulas:
    fee = total * fee_bps // 10000      (rounds toward zero)
    user_amount = total - fee
"""

from __future__ import annotations
from dataclasses import dataclass

from ..core import U64_MAX
from .errors import ArithmeticFault
from .state import BPS_DENOMINATOR


def _check_u64(value: int) -> int:
    if value < 0 or value > U64_MAX:
        raise ArithmeticFault(f"u64 out of range: {value}")
    return value


def checked_add(a: int, b: int) -> int:
    return _check_u64(a + b)


def checked_sub(a: int, b: int) -> int:
    return _check_u64(a - b)


def checked_mul(a: int, b: int) -> int:
    return _check_u64(a * b)


def checked_div(a: int, b: int) -> int:
    if b == 0:
        raise ArithmeticFault("division by zero")
    return _check_u64(a // b)


@dataclass(frozen=True, slots=True)
class WithdrawSplit:
    """How a withdrawn principal divides between the staker and the fee sink."""
    total: int
    fee: int
    user_amount: int


def calculate_fee(total: int, fee_bps: int) -> int:
    """
    Fee owed on a withdrawal of `total` at `fee_bps`.

    The product is computed in u64 before dividing, so a principal near
    U64_MAX with a non-zero rate raises ArithmeticFault.
    """
    return checked_div(checked_mul(total, fee_bps), BPS_DENOMINATOR)


def calculate_withdraw_split(total: int, fee_bps: int) -> WithdrawSplit:
    """
    Split a principal into fee and net amount.

    Example:
        calculate_withdraw_split(10_000, 500)
        # WithdrawSplit(total=10000, fee=500, user_amount=9500)
    """
    fee = calculate_fee(total, fee_bps)
    return WithdrawSplit(total=total, fee=fee, user_amount=checked_sub(total, fee))

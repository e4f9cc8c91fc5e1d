"""
state.py - Staking Program Records

The staking program keeps two kinds of records in the ledger's record store:

1. GlobalFeeConfig: one per program, at the address derived from [b"config"].
   Holds the admin identity and the withdrawal fee rate in basis points.

2. UserStakeRecord: one per (asset, staker), at the address derived from
   [b"user", mint, staker]. Holds the staked principal and the time of the
   latest deposit.

ARCHITECTURE:
=============

1. FROZEN DATACLASSES: GlobalFeeConfig, UserStakeRecord (value semantics)
2. ADAPTER FUNCTIONS (load_*): the only readers of LedgerView for records
3. to_state_dict(): inverse of the loaders, used for StateChange.new_state
4. pack/unpack: fixed little-endian byte layouts prefixed with an 8-byte
   discriminator, sha256("account:<Name>")[:8]

Layouts:
    GlobalFeeConfig  = disc(8) | admin(32) | withdraw_fee_bps(u64)       -> 48 bytes
    UserStakeRecord  = disc(8) | principal(u64) | last_deposit_time(i64) -> 24 bytes
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional
import hashlib
import struct

from solders.pubkey import Pubkey

from ..core import LedgerView, DataAccount, U64_MAX, I64_MIN, I64_MAX, _freeze_state


BPS_DENOMINATOR = 10_000
MAX_FEE_BPS = 10_000

GLOBAL_FEE_CONFIG = "GlobalFeeConfig"
USER_STAKE_RECORD = "UserStakeRecord"


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


GLOBAL_FEE_CONFIG_DISCRIMINATOR = account_discriminator(GLOBAL_FEE_CONFIG)
USER_STAKE_RECORD_DISCRIMINATOR = account_discriminator(USER_STAKE_RECORD)

_CONFIG_BODY = struct.Struct("<32sQ")
_RECORD_BODY = struct.Struct("<Qq")

GLOBAL_FEE_CONFIG_SPACE = 8 + _CONFIG_BODY.size   # 48
USER_STAKE_RECORD_SPACE = 8 + _RECORD_BODY.size   # 24


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class GlobalFeeConfig:
    """
    Program-wide fee configuration.

    The fee rate is read at withdrawal time, so an update applies to every
    withdrawal that follows it regardless of when the stake was deposited.
    """
    admin: str              # Only identity allowed to change the fee
    withdraw_fee_bps: int   # 0..10000

    def __post_init__(self):
        if isinstance(self.withdraw_fee_bps, bool) or not isinstance(self.withdraw_fee_bps, int):
            raise ValueError(f"withdraw_fee_bps must be int, got {type(self.withdraw_fee_bps)}")
        if not 0 <= self.withdraw_fee_bps <= U64_MAX:
            raise ValueError(f"withdraw_fee_bps out of u64 range: {self.withdraw_fee_bps}")


@dataclass(frozen=True, slots=True)
class UserStakeRecord:
    """A single staker's position in a single asset."""
    principal: int = 0           # Tokens owed back before fees
    last_deposit_time: int = 0   # Unix seconds of the latest deposit

    def __post_init__(self):
        if not 0 <= self.principal <= U64_MAX:
            raise ValueError(f"principal out of u64 range: {self.principal}")
        if not I64_MIN <= self.last_deposit_time <= I64_MAX:
            raise ValueError(f"last_deposit_time out of i64 range: {self.last_deposit_time}")


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_fee_config(view: LedgerView, address: str) -> Optional[GlobalFeeConfig]:
    """
    Load the fee configuration, or None if it has not been created.

    Example:
        config = load_fee_config(view, config_address(program_id)[0])
        fee = calculate_fee(total, config.withdraw_fee_bps)
    """
    if not view.has_record(address):
        return None
    raw = view.get_record_state(address)
    return GlobalFeeConfig(
        admin=raw['admin'],
        withdraw_fee_bps=raw.get('withdraw_fee_bps', 0),
    )


def load_stake_record(view: LedgerView, address: str) -> Optional[UserStakeRecord]:
    """Load a staker's record, or None if the staker never deposited."""
    if not view.has_record(address):
        return None
    raw = view.get_record_state(address)
    return UserStakeRecord(
        principal=raw.get('principal', 0),
        last_deposit_time=raw.get('last_deposit_time', 0),
    )


def to_state_dict(record: Any) -> Dict[str, Any]:
    """
    Convert a typed record back to the field dict stored in the ledger.

    Inverse of load_fee_config() / load_stake_record().
    """
    if isinstance(record, GlobalFeeConfig):
        return {'admin': record.admin, 'withdraw_fee_bps': record.withdraw_fee_bps}
    if isinstance(record, UserStakeRecord):
        return {'principal': record.principal, 'last_deposit_time': record.last_deposit_time}
    raise TypeError(f"not a staking record: {type(record).__name__}")


def new_fee_config_account(address: str, program_id: str, payer: str,
                           config: GlobalFeeConfig) -> DataAccount:
    return DataAccount(
        address=address,
        owner=program_id,
        kind=GLOBAL_FEE_CONFIG,
        space=GLOBAL_FEE_CONFIG_SPACE,
        payer=payer,
        _frozen_state=_freeze_state(to_state_dict(config)),
    )


def new_stake_record_account(address: str, program_id: str, payer: str) -> DataAccount:
    """Zeroed record allocated on a staker's first deposit."""
    return DataAccount(
        address=address,
        owner=program_id,
        kind=USER_STAKE_RECORD,
        space=USER_STAKE_RECORD_SPACE,
        payer=payer,
        _frozen_state=_freeze_state(to_state_dict(UserStakeRecord())),
    )


# ============================================================================
# BYTE LAYOUTS
# ============================================================================

def pack_fee_config(config: GlobalFeeConfig) -> bytes:
    admin = bytes(Pubkey.from_string(config.admin))
    return GLOBAL_FEE_CONFIG_DISCRIMINATOR + _CONFIG_BODY.pack(admin, config.withdraw_fee_bps)


def unpack_fee_config(data: bytes) -> GlobalFeeConfig:
    """
    Decode a GlobalFeeConfig account.

    Raises:
        ValueError: wrong length or discriminator
    """
    if len(data) != GLOBAL_FEE_CONFIG_SPACE:
        raise ValueError(f"GlobalFeeConfig must be {GLOBAL_FEE_CONFIG_SPACE} bytes, got {len(data)}")
    if data[:8] != GLOBAL_FEE_CONFIG_DISCRIMINATOR:
        raise ValueError("account discriminator mismatch for GlobalFeeConfig")
    admin, fee_bps = _CONFIG_BODY.unpack(data[8:])
    return GlobalFeeConfig(admin=str(Pubkey.from_bytes(admin)), withdraw_fee_bps=fee_bps)


def pack_stake_record(record: UserStakeRecord) -> bytes:
    return USER_STAKE_RECORD_DISCRIMINATOR + _RECORD_BODY.pack(record.principal, record.last_deposit_time)


def unpack_stake_record(data: bytes) -> UserStakeRecord:
    if len(data) != USER_STAKE_RECORD_SPACE:
        raise ValueError(f"UserStakeRecord must be {USER_STAKE_RECORD_SPACE} bytes, got {len(data)}")
    if data[:8] != USER_STAKE_RECORD_DISCRIMINATOR:
        raise ValueError("account discriminator mismatch for UserStakeRecord")
    principal, last_deposit_time = _RECORD_BODY.unpack(data[8:])
    return UserStakeRecord(principal=principal, last_deposit_time=last_deposit_time)

"""
Staking module - Custodial staking program over the ledger.

- Records: GlobalFeeConfig, UserStakeRecord
- Instructions: initialize, deposit, withdraw, update_fee
- Events: Staked, Withdrawn, FeeUpdated and an in-memory EventLog

All names are re-exported here for convenience.
"""

from .errors import (
    StakingError,
    Unauthorized,
    InvalidAmount,
    InvalidWithdraw,
    ArithmeticFault,
    CustodyTransferFailed,
    InvalidFeeRate,
    AlreadyInitialized,
    NotInitialized,
)

from .state import (
    BPS_DENOMINATOR,
    MAX_FEE_BPS,
    GlobalFeeConfig,
    UserStakeRecord,
    load_fee_config,
    load_stake_record,
    pack_fee_config,
    unpack_fee_config,
    pack_stake_record,
    unpack_stake_record,
)

from .fees import (
    WithdrawSplit,
    checked_add,
    checked_sub,
    checked_mul,
    calculate_fee,
    calculate_withdraw_split,
)

from .events import (
    Staked,
    Withdrawn,
    FeeUpdated,
    StakingEvent,
    EventSink,
    EventLog,
    EventRecord,
    encode_event,
    decode_event,
    parse_program_logs,
)

from .instructions import (
    Instruction,
    INITIALIZE,
    DEPOSIT,
    WITHDRAW,
    UPDATE_FEE,
    compute_initialize,
    compute_deposit,
    compute_withdraw,
    compute_update_fee,
    encode_instruction,
    decode_instruction,
)

from .program import (
    StakingProgram,
    Receipt,
    RecordLocks,
)

__all__ = [
    # Errors
    'StakingError', 'Unauthorized', 'InvalidAmount', 'InvalidWithdraw', 'ArithmeticFault',
    'CustodyTransferFailed', 'InvalidFeeRate', 'AlreadyInitialized', 'NotInitialized',
    # Records
    'BPS_DENOMINATOR', 'MAX_FEE_BPS', 'GlobalFeeConfig', 'UserStakeRecord',
    'load_fee_config', 'load_stake_record',
    'pack_fee_config', 'unpack_fee_config', 'pack_stake_record', 'unpack_stake_record',
    # Fees
    'WithdrawSplit', 'checked_add', 'checked_sub', 'checked_mul',
    'calculate_fee', 'calculate_withdraw_split',
    # Events
    'Staked', 'Withdrawn', 'FeeUpdated', 'StakingEvent', 'EventSink', 'EventLog', 'EventRecord',
    'encode_event', 'decode_event', 'parse_program_logs',
    # Instructions
    'Instruction', 'INITIALIZE', 'DEPOSIT', 'WITHDRAW', 'UPDATE_FEE',
    'compute_initialize', 'compute_deposit', 'compute_withdraw', 'compute_update_fee',
    'encode_instruction', 'decode_instruction',
    # Program
    'StakingProgram', 'Receipt', 'RecordLocks',
]

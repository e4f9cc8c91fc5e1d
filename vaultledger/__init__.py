"""
vaultledger - Custodial Staking Ledger

Users deposit tokens into a per-asset vault, the program tracks each user's
principal, and withdrawals return the full principal minus a configurable fee
routed to the administrator.

Usage:
    from vaultledger import Ledger, token, Move, build_transaction, SYSTEM_WALLET
    from vaultledger.staking import StakingProgram, EventLog

    ledger = Ledger("main")
    ledger.register_unit(token(mint, "Stake Token"))
    ledger.register_wallet("alice_tokens", owner=alice)
    ledger.register_wallet("admin_fees", owner=admin)

    # Fund wallets via SYSTEM_WALLET (proper issuance)
    ledger.execute(build_transaction(ledger, [
        Move(10_000, mint, SYSTEM_WALLET, "alice_tokens", "initial_balance")
    ]))

    program = StakingProgram(ledger, program_id, admin, events=EventLog())
    program.initialize(admin, mint, initial_fee_bps=500)
    program.deposit(alice, mint, "alice_tokens", 10_000)
    program.withdraw(alice, mint, "alice_tokens", "admin_fees")
"""

# Core types
from .core import (
    LedgerView,
    Move,
    StateChange,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    CustodyAccount,
    DataAccount,
    build_transaction,
    Unit,
    ExecuteResult,
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    RecordNotFound,
    token,
    unix_timestamp,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    U64_MAX,
)

# Ledger
from .ledger import Ledger

# Derived addresses
from .addresses import (
    VaultAuthority,
    find_address,
    derive_address,
    config_address,
    vault_address,
    stake_record_address,
)

__all__ = [
    # Core
    'LedgerView', 'Move', 'StateChange', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'CustodyAccount', 'DataAccount',
    'build_transaction',
    'Unit', 'ExecuteResult', 'LedgerError', 'UnitNotRegistered', 'WalletNotRegistered',
    'RecordNotFound', 'token', 'unix_timestamp',
    'SYSTEM_WALLET', 'UNIT_TYPE_TOKEN', 'U64_MAX',
    # Ledger
    'Ledger',
    # Addresses
    'VaultAuthority', 'find_address', 'derive_address',
    'config_address', 'vault_address', 'stake_record_address',
]

__version__ = '1.0.0'

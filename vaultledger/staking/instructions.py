"""
instructions.py - Staking instructions as pure functions

Each compute_* function validates an instruction against a read-only view and
returns the PendingTransaction that carries it out. Nothing is applied here:
the caller hands the result to Ledger.execute(), which applies every move,
allocation and record change together or not at all.

ARCHITECTURE (Pure Function Pattern):
=====================================

    compute_initialize(view, ...) -> PendingTransaction
    compute_deposit(view, ...)    -> PendingTransaction
    compute_withdraw(view, ...)   -> PendingTransaction
    compute_update_fee(view, ...) -> PendingTransaction

Errors are raised before anything is built; a raised StakingError means no
transaction exists.

The module also defines the instruction wire format:
    sha256("global:<name>")[:8] | u64 LE argument (absent for withdraw)
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import hashlib
import struct

from ..core import (
    LedgerView, Move, PendingTransaction, StateChange, CustodyAccount,
    TransactionOrigin, OriginType,
    U64_MAX,
    build_transaction, unix_timestamp,
)
from ..addresses import (
    VaultAuthority,
    config_address, vault_address, stake_record_address,
)
from .errors import (
    Unauthorized, InvalidAmount, InvalidWithdraw, InvalidFeeRate,
    AlreadyInitialized, NotInitialized, CustodyTransferFailed,
)
from .fees import checked_add, calculate_withdraw_split
from .state import (
    GlobalFeeConfig, UserStakeRecord, MAX_FEE_BPS,
    load_fee_config, load_stake_record, to_state_dict,
    new_fee_config_account, new_stake_record_account,
)


INITIALIZE = "initialize"
DEPOSIT = "deposit"
WITHDRAW = "withdraw"
UPDATE_FEE = "update_fee"


def _origin(program_id: str, event_type: str, nonce: Optional[int]) -> TransactionOrigin:
    return TransactionOrigin(OriginType.PROGRAM, program_id, event_type, nonce)


def _check_fee_rate(fee_bps: int) -> None:
    if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
        raise InvalidFeeRate(f"Fee rate must be an integer, got {fee_bps!r}.")
    if not 0 <= fee_bps <= MAX_FEE_BPS:
        raise InvalidFeeRate(f"Fee rate {fee_bps} bps is outside 0..{MAX_FEE_BPS}.")


# ============================================================================
# INITIALIZE
# ============================================================================

def compute_initialize(
    view: LedgerView,
    program_id: str,
    admin: str,
    signer: str,
    mint: str,
    initial_fee_bps: int,
    nonce: Optional[int] = None,
) -> PendingTransaction:
    """
    Open the vault for a mint and, on first use, create the fee config.

    Args:
        view: Read-only ledger access
        program_id: Staking program identity
        admin: The program's configured administrator
        signer: Caller; must be the administrator
        mint: Asset the vault will hold
        initial_fee_bps: Withdrawal fee rate for a newly created config

    Returns:
        PendingTransaction opening the vault custody account (owned by its own
        derived address) and, if absent, allocating GlobalFeeConfig.

    Raises:
        Unauthorized: signer is not the administrator
        InvalidFeeRate: rate above 10000 bps
        AlreadyInitialized: the vault for this mint already exists
    """
    if signer != admin:
        raise Unauthorized()
    _check_fee_rate(initial_fee_bps)

    vault, _ = vault_address(program_id, mint)
    if view.has_wallet(vault):
        raise AlreadyInitialized(f"Vault {vault} already exists for mint {mint}.")

    records = ()
    config_addr, _ = config_address(program_id)
    if not view.has_record(config_addr):
        config = GlobalFeeConfig(admin=admin, withdraw_fee_bps=initial_fee_bps)
        records = (new_fee_config_account(config_addr, program_id, signer, config),)

    return build_transaction(
        view, [],
        origin=_origin(program_id, INITIALIZE, nonce),
        records_to_create=records,
        wallets_to_create=(CustodyAccount(wallet_id=vault, owner=vault),),
        signers={signer},
    )


# ============================================================================
# DEPOSIT
# ============================================================================

def compute_deposit(
    view: LedgerView,
    program_id: str,
    signer: str,
    mint: str,
    staker_account: str,
    amount: int,
    nonce: Optional[int] = None,
) -> PendingTransaction:
    """
    Move `amount` from the staker's account into the vault and credit the
    staker's record.

    The record is allocated on the first deposit with the staker as payer.
    The move is authorized by the signer; the ledger rejects it if the
    signer does not own `staker_account`.

    Raises:
        InvalidAmount: amount is zero, negative or not a u64
        NotInitialized: no vault for this mint
        CustodyTransferFailed: staker_account is the vault
        ArithmeticFault: principal would exceed u64

    Example:
        tx = compute_deposit(ledger, program_id, alice, mint, "alice_tokens", 1_000)
        ledger.execute(tx)
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount()
    if amount > U64_MAX:
        raise InvalidAmount(f"Amount {amount} exceeds u64.")

    vault, _ = vault_address(program_id, mint)
    if not view.has_wallet(vault):
        raise NotInitialized()
    if staker_account == vault:
        raise CustodyTransferFailed("Token transfer failed: the vault cannot stake into itself.")

    record_addr, _ = stake_record_address(program_id, mint, signer)
    records = ()
    record = load_stake_record(view, record_addr)
    if record is None:
        record = UserStakeRecord()
        records = (new_stake_record_account(record_addr, program_id, signer),)

    updated = UserStakeRecord(
        principal=checked_add(record.principal, amount),
        last_deposit_time=unix_timestamp(view.current_time),
    )

    moves = [
        Move(
            quantity=amount,
            unit_symbol=mint,
            source=staker_account,
            dest=vault,
            contract_id=f"deposit_{record_addr}",
            authority=signer,
        )
    ]
    state_changes = [
        StateChange(address=record_addr, old_state=to_state_dict(record), new_state=to_state_dict(updated))
    ]

    return build_transaction(
        view, moves, state_changes,
        origin=_origin(program_id, DEPOSIT, nonce),
        records_to_create=records,
        signers={signer},
    )


# ============================================================================
# WITHDRAW
# ============================================================================

def compute_withdraw(
    view: LedgerView,
    program_id: str,
    signer: str,
    mint: str,
    staker_account: str,
    fee_sink: str,
    vault_authority: VaultAuthority,
    stake_record: Optional[str] = None,
    nonce: Optional[int] = None,
) -> PendingTransaction:
    """
    Return the signer's full principal minus the withdrawal fee.

    Args:
        view: Read-only ledger access
        program_id: Staking program identity
        signer: Staker withdrawing
        mint: Staked asset
        staker_account: Destination for the net amount
        fee_sink: Destination for the fee; must be owned by the config admin
        vault_authority: Capability that signs both vault debits
        stake_record: Record address the caller claims (checked against the
                      one derived from the signer)

    Returns:
        PendingTransaction with:
        - moves: fee leg vault -> fee_sink (omitted when the fee is 0) and
                 net leg vault -> staker_account
        - state_changes: principal reset to 0

    Raises:
        NotInitialized: missing config or vault
        Unauthorized: stake_record is not the signer's, or fee_sink is not
                      owned by the admin
        InvalidWithdraw: no record or zero principal
        CustodyTransferFailed: staker_account is the vault, or the vault
                               authority bump does not derive a valid address
        ArithmeticFault: fee math leaves the u64 range
    """
    config_addr, _ = config_address(program_id)
    config = load_fee_config(view, config_addr)
    if config is None:
        raise NotInitialized()

    vault, _ = vault_address(program_id, mint)
    if not view.has_wallet(vault):
        raise NotInitialized()

    record_addr, _ = stake_record_address(program_id, mint, signer)
    if stake_record is not None and stake_record != record_addr:
        raise Unauthorized(f"Stake record {stake_record} does not belong to {signer}.")

    record = load_stake_record(view, record_addr)
    if record is None or record.principal == 0:
        raise InvalidWithdraw()

    if not view.has_wallet(fee_sink) or view.get_owner(fee_sink) != config.admin:
        raise Unauthorized(f"Fee sink {fee_sink} is not owned by the admin.")
    if staker_account == vault:
        raise CustodyTransferFailed("Token transfer failed: the vault cannot be the payout account.")

    split = calculate_withdraw_split(record.principal, config.withdraw_fee_bps)
    try:
        vault_signer = vault_authority.signer
    except ValueError as exc:
        raise CustodyTransferFailed(f"Token transfer failed: vault authority cannot sign: {exc}") from exc

    moves = []
    if split.fee > 0:
        moves.append(Move(
            quantity=split.fee,
            unit_symbol=mint,
            source=vault,
            dest=fee_sink,
            contract_id=f"withdraw_fee_{record_addr}",
            authority=vault_signer,
        ))
    if split.user_amount > 0:
        moves.append(Move(
            quantity=split.user_amount,
            unit_symbol=mint,
            source=vault,
            dest=staker_account,
            contract_id=f"withdraw_{record_addr}",
            authority=vault_signer,
        ))

    updated = UserStakeRecord(principal=0, last_deposit_time=record.last_deposit_time)
    state_changes = [
        StateChange(address=record_addr, old_state=to_state_dict(record), new_state=to_state_dict(updated))
    ]

    return build_transaction(
        view, moves, state_changes,
        origin=_origin(program_id, WITHDRAW, nonce),
        signers={signer, vault_signer},
    )


# ============================================================================
# UPDATE FEE
# ============================================================================

def compute_update_fee(
    view: LedgerView,
    program_id: str,
    signer: str,
    new_fee_bps: int,
    nonce: Optional[int] = None,
) -> PendingTransaction:
    """
    Change the withdrawal fee rate.

    Raises:
        NotInitialized: no fee config yet
        Unauthorized: signer is not the config admin
        InvalidFeeRate: rate above 10000 bps
    """
    config_addr, _ = config_address(program_id)
    config = load_fee_config(view, config_addr)
    if config is None:
        raise NotInitialized()
    if signer != config.admin:
        raise Unauthorized()
    _check_fee_rate(new_fee_bps)

    updated = GlobalFeeConfig(admin=config.admin, withdraw_fee_bps=new_fee_bps)
    state_changes = [
        StateChange(address=config_addr, old_state=to_state_dict(config), new_state=to_state_dict(updated))
    ]
    return build_transaction(
        view, [], state_changes,
        origin=_origin(program_id, UPDATE_FEE, nonce),
        signers={signer},
    )


# ============================================================================
# INSTRUCTION WIRE FORMAT
# ============================================================================

_U64 = struct.Struct("<Q")

# Instructions that carry a single u64 argument
_ARG_INSTRUCTIONS = (INITIALIZE, DEPOSIT, UPDATE_FEE)


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


_BY_DISCRIMINATOR = {
    instruction_discriminator(name): name
    for name in (INITIALIZE, DEPOSIT, WITHDRAW, UPDATE_FEE)
}


@dataclass(frozen=True, slots=True)
class Instruction:
    """A decoded instruction: its name and its u64 argument, if any."""
    name: str
    arg: Optional[int] = None


def encode_instruction(instruction: Instruction) -> bytes:
    """
    Serialize an instruction.

    Example:
        encode_instruction(Instruction(DEPOSIT, 1_000))  # 8-byte tag + u64 LE
    """
    if instruction.name not in (INITIALIZE, DEPOSIT, WITHDRAW, UPDATE_FEE):
        raise ValueError(f"unknown instruction: {instruction.name}")
    data = instruction_discriminator(instruction.name)
    if instruction.name in _ARG_INSTRUCTIONS:
        if instruction.arg is None or not 0 <= instruction.arg <= U64_MAX:
            raise ValueError(f"{instruction.name} needs a u64 argument, got {instruction.arg!r}")
        data += _U64.pack(instruction.arg)
    elif instruction.arg is not None:
        raise ValueError(f"{instruction.name} takes no argument")
    return data


def decode_instruction(data: bytes) -> Instruction:
    """
    Parse instruction bytes.

    Raises:
        ValueError: unknown discriminator or wrong argument length
    """
    name = _BY_DISCRIMINATOR.get(bytes(data[:8]))
    if name is None:
        raise ValueError("unknown instruction discriminator")
    body = bytes(data[8:])
    if name in _ARG_INSTRUCTIONS:
        if len(body) != _U64.size:
            raise ValueError(f"{name} expects an 8-byte argument, got {len(body)} bytes")
        return Instruction(name, _U64.unpack(body)[0])
    if body:
        raise ValueError(f"{name} takes no argument, got {len(body)} bytes")
    return Instruction(name)

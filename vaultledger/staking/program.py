"""
program.py - Staking program entry points

StakingProgram binds the pure instruction functions to a Ledger: it holds the
program identity and administrator, serializes operations that touch the same
records, submits the built transaction, and emits events once the ledger has
applied it.

Each entry point runs in three steps:
    1. lock the records the instruction references (sorted, so overlapping
       operations cannot deadlock)
    2. compute_*(ledger, ...) validates and builds a PendingTransaction
    3. ledger.execute() applies it atomically; a rejection becomes
       CustodyTransferFailed

Example:
    program = StakingProgram(ledger, program_id, admin, events=EventLog())
    program.initialize(admin, mint, initial_fee_bps=500)
    program.deposit(alice, mint, "alice_tokens", 10_000)
    receipt = program.withdraw(alice, mint, "alice_tokens", "admin_fees")
    receipt.events  # (Withdrawn(staker=alice, net_amount=9500, fee=500, new_total=0),)
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
import itertools
import threading

from ..core import ExecuteResult, PendingTransaction
from ..ledger import Ledger
from ..addresses import (
    VaultAuthority, to_pubkey,
    config_address, vault_address, stake_record_address,
)
from .errors import CustodyTransferFailed
from .fees import calculate_withdraw_split
from .events import (
    EventSink, Staked, Withdrawn, FeeUpdated, StakingEvent, event_log_line,
)
from .instructions import (
    INITIALIZE, DEPOSIT, WITHDRAW, UPDATE_FEE,
    compute_initialize, compute_deposit, compute_withdraw, compute_update_fee,
    decode_instruction,
)
from .state import GlobalFeeConfig, UserStakeRecord, load_fee_config, load_stake_record


# Distinguishes invocations whose transactions would otherwise be identical
_invocation_counter = itertools.count(1)


class RecordLocks:
    """Per-address locks, always acquired in sorted address order."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, address: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(address)
            if lock is None:
                lock = self._locks[address] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, addresses: Iterable[str]) -> Iterator[None]:
        locks = [self._lock_for(a) for a in sorted(set(addresses))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


@dataclass(frozen=True, slots=True)
class Receipt:
    """
    Outcome of one successful instruction.

    Attributes:
        exec_id: Ledger execution id of the applied transaction
        logs: Program log lines ("Program log: ...", "Program data: ...")
        events: Events emitted, in order
    """
    exec_id: str
    logs: Tuple[str, ...]
    events: Tuple[StakingEvent, ...]


class StakingProgram:
    """
    Custodial staking over a Ledger.

    Args:
        ledger: Ledger holding custody accounts and records
        program_id: Identity of this program (seeds all derived addresses)
        admin: Administrator allowed to initialize vaults; becomes the fee
               config admin on first initialization
        events: Optional sink receiving events after each commit
        verbose: Print program logs (default: the ledger's verbose flag)
    """

    def __init__(
        self,
        ledger: Ledger,
        program_id: str,
        admin: str,
        events: Optional[EventSink] = None,
        verbose: Optional[bool] = None,
    ):
        to_pubkey(program_id)
        to_pubkey(admin)
        self.ledger = ledger
        self.program_id = program_id
        self.admin = admin
        self.events = events
        self.verbose = ledger.verbose if verbose is None else verbose
        self._locks = RecordLocks()
        self._authorities: Dict[str, VaultAuthority] = {}
        self._authorities_guard = threading.Lock()

    # ========================================================================
    # ADDRESSES AND READS
    # ========================================================================

    @property
    def config_address(self) -> str:
        return config_address(self.program_id)[0]

    def vault_address(self, mint: str) -> str:
        return vault_address(self.program_id, mint)[0]

    def stake_record_address(self, mint: str, staker: str) -> str:
        return stake_record_address(self.program_id, mint, staker)[0]

    def get_config(self) -> Optional[GlobalFeeConfig]:
        return load_fee_config(self.ledger, self.config_address)

    def get_stake_record(self, mint: str, staker: str) -> Optional[UserStakeRecord]:
        return load_stake_record(self.ledger, self.stake_record_address(mint, staker))

    def vault_balance(self, mint: str) -> int:
        return self.ledger.get_balance(self.vault_address(mint), mint)

    def _vault_authority(self, mint: str) -> VaultAuthority:
        with self._authorities_guard:
            authority = self._authorities.get(mint)
            if authority is None:
                authority = self._authorities[mint] = VaultAuthority.for_mint(self.program_id, mint)
            return authority

    # ========================================================================
    # INSTRUCTIONS
    # ========================================================================

    def initialize(self, signer: str, mint: str, initial_fee_bps: int) -> Receipt:
        """Open the vault for `mint`; creates the fee config on first use."""
        with self._locks.hold([self.config_address, self.vault_address(mint)]):
            pending = compute_initialize(
                self.ledger, self.program_id, self.admin, signer, mint, initial_fee_bps,
                nonce=next(_invocation_counter),
            )
            config = self.get_config()
            fee_bps = config.withdraw_fee_bps if config else initial_fee_bps
            messages = [f"Staking Vault & Config Initialized! Initial Fee: {fee_bps} bps"]
            return self._submit("Initialize", pending, messages, [])

    def deposit(self, signer: str, mint: str, staker_account: str, amount: int) -> Receipt:
        """Stake `amount` of `mint` from `staker_account`."""
        record_addr = self.stake_record_address(mint, signer)
        with self._locks.hold([record_addr]):
            pending = compute_deposit(
                self.ledger, self.program_id, signer, mint, staker_account, amount,
                nonce=next(_invocation_counter),
            )
            new_total = _new_state(pending, record_addr)['principal']
            messages = [f"Staked {amount} tokens successfully. Total: {new_total}"]
            events = [Staked(staker=signer, amount=amount, new_total=new_total)]
            return self._submit("Deposit", pending, messages, events)

    def withdraw(
        self,
        signer: str,
        mint: str,
        staker_account: str,
        fee_sink: str,
        stake_record: Optional[str] = None,
    ) -> Receipt:
        """Withdraw the signer's entire principal, paying the current fee."""
        record_addr = self.stake_record_address(mint, signer)
        with self._locks.hold([record_addr, self.config_address]):
            pending = compute_withdraw(
                self.ledger, self.program_id, signer, mint, staker_account, fee_sink,
                self._vault_authority(mint),
                stake_record=stake_record,
                nonce=next(_invocation_counter),
            )
            principal = _old_state(pending, record_addr)['principal']
            split = calculate_withdraw_split(principal, self.get_config().withdraw_fee_bps)
            fee, net_amount = split.fee, split.user_amount
            new_total = _new_state(pending, record_addr)['principal']
            messages = [f"Withdrawn {net_amount} tokens. Fee deducted: {fee}. Total Reset."]
            events = [Withdrawn(staker=signer, net_amount=net_amount, fee=fee, new_total=new_total)]
            return self._submit("Withdraw", pending, messages, events)

    def update_fee(self, signer: str, new_fee_bps: int) -> Receipt:
        """Change the withdrawal fee; only the config admin may call this."""
        with self._locks.hold([self.config_address]):
            pending = compute_update_fee(
                self.ledger, self.program_id, signer, new_fee_bps,
                nonce=next(_invocation_counter),
            )
            old_rate = _old_state(pending, self.config_address)['withdraw_fee_bps']
            messages = [f"Fee updated from {old_rate} to {new_fee_bps}"]
            events = [FeeUpdated(old_rate=old_rate, new_rate=new_fee_bps)]
            return self._submit("UpdateFee", pending, messages, events)

    def process(self, signer: str, data: bytes, accounts: Mapping[str, str]) -> Receipt:
        """
        Dispatch an encoded instruction.

        Args:
            signer: Caller identity
            data: Instruction bytes (see encode_instruction)
            accounts: Referenced accounts by role: "mint", "staker_account",
                      "fee_sink", and optionally "stake_record"

        Raises:
            ValueError: undecodable data or a missing account role
        """
        instruction = decode_instruction(data)

        def account(role: str) -> str:
            if role not in accounts:
                raise ValueError(f"{instruction.name} requires account '{role}'")
            return accounts[role]

        if instruction.name == INITIALIZE:
            return self.initialize(signer, account("mint"), instruction.arg)
        if instruction.name == DEPOSIT:
            return self.deposit(signer, account("mint"), account("staker_account"), instruction.arg)
        if instruction.name == WITHDRAW:
            return self.withdraw(
                signer, account("mint"), account("staker_account"), account("fee_sink"),
                stake_record=accounts.get("stake_record"),
            )
        if instruction.name == UPDATE_FEE:
            return self.update_fee(signer, instruction.arg)
        raise ValueError(f"unhandled instruction: {instruction.name}")

    def simulate(self, signer: str, data: bytes, accounts: Mapping[str, str]) -> Receipt:
        """
        Run an encoded instruction against a clone of the ledger.

        The real ledger and the event sink are untouched; errors propagate
        exactly as process() would raise them.
        """
        sandbox = self.ledger.clone()
        sandbox.verbose = False
        dry_run = StakingProgram(sandbox, self.program_id, self.admin, events=None, verbose=False)
        return dry_run.process(signer, data, accounts)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _submit(
        self,
        instruction: str,
        pending: PendingTransaction,
        messages: List[str],
        events: List[StakingEvent],
    ) -> Receipt:
        logs = [
            f"Program {self.program_id} invoke [1]",
            f"Program log: Instruction: {instruction}",
        ]

        result = self.ledger.execute(pending)
        if result != ExecuteResult.APPLIED:
            reason = self.ledger.last_rejection or result.value
            if self.verbose:
                print(f"✗ {instruction} failed: {reason}")
            raise CustodyTransferFailed(f"Token transfer failed: {reason}")

        tx = self.ledger.find_transaction(pending.intent_id)
        exec_id = tx.exec_id

        logs.extend(f"Program log: {m}" for m in messages)
        for event in events:
            logs.append(event_log_line(event))
            if self.events is not None:
                try:
                    self.events.emit(event, exec_id, tx.execution_time)
                except Exception as exc:
                    # State is already committed; the failure is only reported
                    logs.append(f"Program log: event sink error: {exc!r}")
        logs.append(f"Program {self.program_id} success")

        if self.verbose:
            print("\n".join(logs))
        return Receipt(exec_id=exec_id, logs=tuple(logs), events=tuple(events))


def _new_state(pending: PendingTransaction, address: str) -> dict:
    for sc in pending.state_changes:
        if sc.address == address:
            return sc.new_state
    raise KeyError(address)


def _old_state(pending: PendingTransaction, address: str) -> dict:
    for sc in pending.state_changes:
        if sc.address == address:
            return sc.old_state
    raise KeyError(address)

"""
ledger.py - Stateful Custody Ledger

The Ledger class is the central state manager: it holds token balances in
custody accounts and the program-owned data accounts (records), and it is the
only module that mutates them.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (every move, allocation and record
      change succeeds or nothing happens)
    - Checks debit authority: the owner of a source account must be among the
      transaction's signers
    - Rejects record changes built against stale record state
    - Always validates and always logs - no exceptions
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
import threading

from .core import (
    # Types
    Move, Transaction, Unit, DataAccount,
    PendingTransaction,
    ExecuteResult,
    Positions, RecordState,
    # Constants
    SYSTEM_WALLET,
    # Exceptions
    LedgerError, UnitNotRegistered, WalletNotRegistered, RecordNotFound,
    # Helper functions
    _freeze_state,
)


class Ledger:
    """
    Custody ledger with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to pure
    functions that access only read-only methods.

    Design Principles:
        - Always validates: every transaction is checked against registration,
          debit authority, frozen accounts, balance bounds and record freshness.
        - Always logs: every applied transaction is recorded in the audit trail.

    Thread Safety:
        execute() and the registration methods are serialized by an internal
        re-entrant lock. Readers see state between transactions only.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token(mint, "Stake Token"))
        ledger.register_wallet("alice_tokens", owner=alice)
        ledger.register_wallet("bob_tokens", owner=bob)

        tx = build_transaction(ledger, [
            Move(100, mint, "alice_tokens", "bob_tokens", "payment_001", authority=alice)
        ], signers={alice})
        result = ledger.execute(tx)
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Enable console output (default: True)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.owners: Dict[str, str] = {}
        self.units: Dict[str, Unit] = {}
        self.records: Dict[str, DataAccount] = {}
        self.registered_wallets: Set[str] = set()
        self.frozen_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._transactions_by_intent: Dict[str, Transaction] = {}
        self.last_rejection: Optional[str] = None
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # Inverted index mapping unit -> {wallet -> quantity} for O(1) position lookups
        self._positions_by_unit: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._lock = threading.RLock()

        # Auto-register the system wallet (used for issuance/redemption)
        self.registered_wallets.add(SYSTEM_WALLET)
        self.owners[SYSTEM_WALLET] = SYSTEM_WALLET
        self.balances[SYSTEM_WALLET] = defaultdict(int)

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, 0)

    def get_owner(self, wallet_id: str) -> str:
        """Return the identity that controls a custody account."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return self.owners[wallet_id]

    def has_wallet(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    def has_record(self, address: str) -> bool:
        return address in self.records

    def get_record(self, address: str) -> DataAccount:
        """Return the DataAccount stored at an address."""
        if address not in self.records:
            raise RecordNotFound(f"No record at {address}")
        return self.records[address]

    def get_record_state(self, address: str) -> RecordState:
        """
        Get a deep copy of a record's fields.

        Raises:
            RecordNotFound: If nothing is allocated at the address
        """
        return copy.deepcopy(self.get_record(address).state)

    def get_positions(self, unit_symbol: str) -> Positions:
        """
        Get all non-zero positions for a specific unit across all wallets.

        Uses an inverted index for O(1) lookup performance.
        """
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def total_supply(self, unit_symbol: str) -> int:
        """
        Calculate total supply of a unit across all wallets.

        Includes the system wallet, so the result is always zero for a unit
        whose supply was issued through transactions.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(self.balances[w].get(unit_symbol, 0) for w in sorted(self.registered_wallets))

    def circulating_supply(self, unit_symbol: str) -> int:
        """Supply held outside the system wallet."""
        return self.total_supply(unit_symbol) - self.balances[SYSTEM_WALLET].get(unit_symbol, 0)

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, int] = None,
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        For every unit, the sum of all balances across all wallets equals a
        constant. Quantities are integers, so comparison is exact.

        Args:
            expected_supplies: Optional dict mapping unit symbols to expected totals.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[str, int] - Current total supply for each unit
            - 'discrepancies': List[Dict] - unit, expected, actual, difference
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply

            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                if current_supply != expected:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': current_supply - expected,
                    })

        if expected_supplies:
            for unit_symbol, expected in expected_supplies.items():
                if unit_symbol not in supplies:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': 0,
                        'difference': -expected,
                        'error': 'unit not registered',
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Time can only move forward, never backward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str, owner: Optional[str] = None) -> str:
        """
        Register a new custody account in the ledger.

        Args:
            wallet_id: Unique identifier for the wallet
            owner: Identity allowed to authorize debits (default: wallet_id itself)

        Returns:
            The wallet_id that was registered

        Raises:
            ValueError: If wallet is already registered
        """
        with self._lock:
            if wallet_id in self.registered_wallets:
                raise ValueError(f"Wallet {wallet_id} already registered")
            self._open_wallet(wallet_id, owner or wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (token mint) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        with self._lock:
            if unit.symbol in self.units:
                raise ValueError(f"Unit {unit.symbol} already registered")
            self.units[unit.symbol] = unit
        if self.verbose:
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def freeze_wallet(self, wallet_id: str) -> None:
        """Block all moves into and out of a custody account."""
        with self._lock:
            if wallet_id not in self.registered_wallets:
                raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
            self.frozen_wallets.add(wallet_id)

    def thaw_wallet(self, wallet_id: str) -> None:
        with self._lock:
            self.frozen_wallets.discard(wallet_id)

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """
        Set a wallet's balance for a unit directly.

        WARNING: This method bypasses double-entry accounting and is only
        available in test mode. For production use, use build_transaction()
        and execute() instead.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        with self._lock:
            self.balances[wallet_id][unit_symbol] = int(quantity)
            self._update_position_index(wallet_id, unit_symbol, int(quantity))

    def _open_wallet(self, wallet_id: str, owner: str) -> None:
        self.registered_wallets.add(wallet_id)
        self.owners[wallet_id] = owner
        self.balances[wallet_id] = defaultdict(int)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Wallet openings, record allocations, moves and record changes are all
        validated before anything is applied; on any failure nothing changes
        and the reason is kept in `last_rejection`.

        Execution is idempotent: a pending transaction with the same intent_id
        will not be applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed
        """
        with self._lock:
            self.last_rejection = None

            if pending.is_empty():
                return ExecuteResult.APPLIED

            if pending.intent_id in self.seen_intent_ids:
                if self.verbose:
                    print(f"⚠️  ALREADY_APPLIED: intent_id={pending.intent_id}")
                return ExecuteResult.ALREADY_APPLIED

            valid, reason = self._validate_pending(pending)
            if not valid:
                self.last_rejection = reason
                if self.verbose:
                    print(f"✗ REJECTED: {reason}")
                return ExecuteResult.REJECTED

            sequence = self._next_sequence
            self._next_sequence += 1
            exec_id = self._generate_exec_id(sequence)

            tx = Transaction(
                moves=pending.moves,
                state_changes=pending.state_changes,
                origin=pending.origin,
                timestamp=pending.timestamp,
                intent_id=pending.intent_id,
                exec_id=exec_id,
                ledger_name=self.name,
                execution_time=self._current_time,
                sequence_number=sequence,
                records_created=tuple(r.address for r in pending.records_to_create),
                wallets_created=tuple(w.wallet_id for w in pending.wallets_to_create),
            )

            for wallet in pending.wallets_to_create:
                self._open_wallet(wallet.wallet_id, wallet.owner)

            for record in pending.records_to_create:
                self.records[record.address] = record

            self._execute_moves(tx.moves)

            # DataAccount is frozen, so each change installs a new instance
            for sc in tx.state_changes:
                old_record = self.records[sc.address]
                new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
                self.records[sc.address] = replace(old_record, _frozen_state=_freeze_state(new_state))

            self.transaction_log.append(tx)
            self._transactions_by_intent[pending.intent_id] = tx
            self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")
        return ExecuteResult.APPLIED

    def last_transaction(self) -> Optional[Transaction]:
        """Most recently applied transaction, if any."""
        return self.transaction_log[-1] if self.transaction_log else None

    def find_transaction(self, intent_id: str) -> Optional[Transaction]:
        """Applied transaction for an intent_id, if any."""
        return self._transactions_by_intent.get(intent_id)

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print transaction details (Transaction.__repr__) followed by a result line."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{pad(' ' + icon + ' ' + result)}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Wallet openings and record allocations do not collide
        3. Unit and wallet registration, frozen accounts
        4. Debit authority (owner of the source signed the transaction)
        5. Balance constraint validation (min/max balance limits)
        6. Record changes target existing records and match their current state

        Returns:
            Tuple of (success: bool, reason: str)
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        new_wallets: Dict[str, str] = {}
        for wallet in pending.wallets_to_create:
            if wallet.wallet_id in self.registered_wallets or wallet.wallet_id in new_wallets:
                return False, f"wallet already exists: {wallet.wallet_id}"
            new_wallets[wallet.wallet_id] = wallet.owner

        new_records: Dict[str, DataAccount] = {}
        for record in pending.records_to_create:
            if record.address in self.records or record.address in new_records:
                return False, f"record already exists: {record.address}"
            new_records[record.address] = record

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            for wallet_id in (move.source, move.dest):
                if wallet_id not in self.registered_wallets and wallet_id not in new_wallets:
                    return False, f"wallet not registered: {wallet_id}"
                if wallet_id in self.frozen_wallets:
                    return False, f"wallet frozen: {wallet_id}"

            ok, reason = self._check_authority(move, pending.signers, new_wallets)
            if not ok:
                return False, reason

        net: Dict[Tuple[str, str], int] = {}
        for move in pending.moves:
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = net.get(key_src, 0) - move.quantity
            net[key_dst] = net.get(key_dst, 0) + move.quantity

        # SYSTEM_WALLET is exempt from balance validation
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            current = self.balances[wallet].get(unit_sym, 0) if wallet in self.balances else 0
            unit = self.units[unit_sym]
            proposed = current + delta
            if proposed < unit.min_balance:
                return False, f"insufficient funds: {wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"balance overflow: {wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        for sc in pending.state_changes:
            if sc.address in new_records:
                current_state = new_records[sc.address].state
            elif sc.address in self.records:
                current_state = self.records[sc.address].state
            else:
                return False, f"record not found: {sc.address}"
            if sc.old_state is not None:
                old_state = sc.old_state if isinstance(sc.old_state, dict) else {}
                if old_state != current_state:
                    return False, f"stale record state: {sc.address}"

        return True, ""

    def _check_authority(
        self,
        move: Move,
        signers: frozenset,
        new_wallets: Dict[str, str],
    ) -> Tuple[bool, str]:
        """
        A debit needs the source owner's authority, proven by a signature.

        Moves out of SYSTEM_WALLET are issuance and need the unit's mint
        authority when one is configured.
        """
        if move.source == SYSTEM_WALLET:
            mint_authority = self.units[move.unit_symbol].state.get('mint_authority')
            if mint_authority is None:
                return True, ""
            if move.authority != mint_authority or mint_authority not in signers:
                return False, f"missing mint authority for {move.unit_symbol}"
            return True, ""

        owner = new_wallets.get(move.source) or self.owners.get(move.source)
        if move.authority is None:
            return False, f"missing authority for debit from {move.source}"
        if move.authority != owner:
            return False, f"authority {move.authority} does not own {move.source}"
        if move.authority not in signers:
            return False, f"missing signature from {move.authority}"
        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """
        Update the inverted position index after a balance change.

        Zero balances are removed from the index to keep it compact.
        """
        if quantity != 0:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply all moves to wallet balances and update the position index."""
        for move in moves:
            new_src_balance = self.balances[move.source][move.unit_symbol] - move.quantity
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = self.balances[move.dest][move.unit_symbol] + move.quantity
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a deep copy of this ledger.

        All state is fully independent: modifications to the clone will not
        affect the original ledger, and vice versa. Used for dry-run
        simulation of instructions.
        """
        with self._lock:
            cloned = Ledger.__new__(Ledger)
            cloned.name = self.name
            cloned._current_time = self._current_time
            cloned.verbose = self.verbose
            cloned._test_mode = self._test_mode
            cloned._lock = threading.RLock()
            cloned.last_rejection = None

            cloned.units = dict(self.units)
            cloned.records = dict(self.records)
            cloned.registered_wallets = self.registered_wallets.copy()
            cloned.frozen_wallets = self.frozen_wallets.copy()
            cloned.owners = dict(self.owners)
            cloned.seen_intent_ids = self.seen_intent_ids.copy()
            cloned.transaction_log = list(self.transaction_log)
            cloned._transactions_by_intent = dict(self._transactions_by_intent)
            cloned._next_sequence = self._next_sequence

            cloned.balances = {}
            for wallet, bals in self.balances.items():
                cloned.balances[wallet] = defaultdict(int, bals)

            cloned._positions_by_unit = defaultdict(dict)
            for unit_symbol, positions in self._positions_by_unit.items():
                cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned

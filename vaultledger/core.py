"""
Core types and pure functions for the custodial ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, StateChange, PendingTransaction, Transaction,
   Unit, CustodyAccount, DataAccount
3. Exceptions: LedgerError and custody-level error types
4. Type aliases: Positions, RecordState
5. Unit factories: token()

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance (minting) and redemption (burning).
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Unit type constants (strings, not enum).
UNIT_TYPE_TOKEN = "TOKEN"

# Token quantities are unsigned 64-bit integers in the token's smallest unit.
U64_MAX = 2**64 - 1

# Timestamps are signed 64-bit unix seconds.
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1

# Default display precision for fungible tokens.
DEFAULT_TOKEN_DECIMALS = 6


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, int]

# Field values of a data account (record), e.g. {'principal': 0, 'last_deposit_time': 0}.
RecordState = Dict[str, Any]

# Internal state for a unit (decimals, mint authority, ...).
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Functions accepting a LedgerView parameter declare their read-only intent.
    The Ledger class implements this protocol but also provides mutation
    methods. For testing, FakeView provides a truly immutable implementation.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """
        Return the balance of a specific unit in a wallet.

        Returns 0 if the wallet holds none of the unit.
        """
        ...

    def get_owner(self, wallet_id: str) -> str:
        """Return the identity that controls a custody account."""
        ...

    def has_wallet(self, wallet_id: str) -> bool:
        """Return True if the custody account exists."""
        ...

    def has_record(self, address: str) -> bool:
        """Return True if a data account exists at the address."""
        ...

    def get_record_state(self, address: str) -> RecordState:
        """Return a copy of the data account's fields."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was successfully validated and applied to the ledger.
    ALREADY_APPLIED: Transaction ID was previously processed (idempotent behavior).
    REJECTED: Transaction failed validation (insufficient funds, missing
              authority, stale record state, ...).
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """
    Classification of where a transaction originated.

    Used for audit trails and reconciliation.
    """
    USER_ACTION = "user_action"           # Manual user-initiated transaction
    PROGRAM = "program"                   # Program instruction (stake, withdraw, ...)
    SYSTEM = "system"                     # System operations (minting, initial setup)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    pass


class RecordNotFound(LedgerError):
    """Raised when reading a data account that has not been allocated."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source (USER, PROGRAM, SYSTEM)
        source_id: Identifier of the specific source (program id, user ID, ...)
        event_type: Specific event within the source (e.g., "deposit", "withdraw")
        nonce: Distinguishes otherwise identical invocations (e.g. two withdrawals
               that leave identical records behind)
    """
    origin_type: OriginType
    source_id: str
    event_type: Optional[str] = None
    nonce: Optional[int] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.event_type:
            parts.append(f"event={self.event_type}")
        if self.nonce is not None:
            parts.append(f"nonce={self.nonce}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# RECORD STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class StateChange:
    """
    Record of a data account change for transaction logging and validation.

    Stores complete before/after snapshots. The ledger compares old_state
    against the current record at execute time and rejects the transaction
    if they differ (optimistic concurrency).

    Attributes:
        address: Address of the data account whose fields changed
        old_state: Complete fields before the change (dict, or None for a new record)
        new_state: Complete fields after the change (dict)
    """
    address: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """
        Compute fields that differ between old and new state.

        Returns:
            Dict mapping field name to (old_value, new_value) tuples.
        """
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changes[key] = (old_val, new_val)
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two custody accounts.

    Attributes:
        quantity: Amount to transfer in the unit's smallest denomination (1..U64_MAX).
        unit_symbol: The unit being transferred (a mint address for tokens).
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the instruction leg generating this move.
        authority: Identity authorizing the debit. Must own the source account
                   and be among the transaction's signers. None is only
                   accepted for moves out of SYSTEM_WALLET.
        metadata: Optional additional information about the move.
    """
    quantity: int
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    authority: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Move quantity must be int, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.quantity > U64_MAX:
            raise ValueError(f"Move quantity exceeds u64: {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class CustodyAccount:
    """
    Request to open a custody account (wallet) as part of a transaction.

    Attributes:
        wallet_id: Identifier of the new account.
        owner: Identity allowed to authorize debits from it.
    """
    wallet_id: str
    owner: str


def _freeze_state(state: Optional[RecordState]) -> Tuple[Tuple[str, Any], ...]:
    """
    Convert a mutable state dict to an immutable frozen representation.

    Returns:
        Tuple of (key, value) pairs, sorted by key for determinism
    """
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> RecordState:
    """Convert a frozen state representation back to a mutable dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class DataAccount:
    """
    A program-owned data account (record) at a deterministic address.

    Attributes:
        address: Derived address of the record.
        owner: Program identity that owns and may mutate the record.
        kind: Layout name (e.g. "GlobalFeeConfig", "UserStakeRecord").
        space: Allocated size in bytes of the persisted layout.
        payer: Identity that paid for the allocation.
        _frozen_state: Internal frozen field values.
    """
    address: str
    owner: str
    kind: str
    space: int
    payer: str
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> RecordState:
        """Field values as a new mutable dict."""
        return _thaw_state(self._frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a fungible unit (token mint) in the ledger.

    Attributes:
        symbol: Identifier for the unit (the mint address for tokens).
        name: Human-readable name for the unit.
        unit_type: Category of the unit (TOKEN).
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet.
        _frozen_state: Internal frozen state representation.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: int = 0
    max_balance: int = U64_MAX
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Return the unit's state as a new mutable dict."""
        return _thaw_state(self._frozen_state)

    @property
    def decimals(self) -> int:
        return self.state.get('decimals', 0)


# ============================================================================
# CANONICAL IDENTITY
# ============================================================================

def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Ensures deterministic serialization regardless of dict insertion order
    or nested structure depth.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"I:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, (set, frozenset)):
        serialized = ",".join(_canonicalize(item) for item in sorted(value, key=str))
        return f"<{serialized}>"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[StateChange, ...],
    origin: TransactionOrigin,
    records_to_create: Tuple[DataAccount, ...] = (),
    wallets_to_create: Tuple[CustodyAccount, ...] = (),
) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    Based solely on the semantic content of the transaction, not on timestamps
    or ledger-specific data. Used for idempotency checking: the same intent is
    never applied twice.
    """
    sorted_moves = tuple(sorted(
        moves,
        key=lambda m: (m.quantity, m.unit_symbol, m.source, m.dest, m.contract_id)
    ))

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")
    if origin.nonce is not None:
        content_parts.append(f"nonce:{origin.nonce}")

    for wallet in sorted(wallets_to_create, key=lambda w: w.wallet_id):
        content_parts.append(f"wallet_create:{wallet.wallet_id}|{wallet.owner}")

    for record in sorted(records_to_create, key=lambda r: r.address):
        content_parts.append(
            f"record_create:{record.address}|{record.kind}|{record.owner}"
            f"|{record.payer}|{record.space}|{_canonicalize(record.state)}"
        )

    for m in sorted_moves:
        content_parts.append(
            f"move:{m.quantity}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}|{m.authority}"
        )

    for sc in sorted(state_changes, key=lambda s: s.address):
        old_canonical = _canonicalize(sc.old_state)
        new_canonical = _canonicalize(sc.new_state)
        content_parts.append(f"state_change:{sc.address}|{old_canonical}|{new_canonical}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Built by program instructions and submitted to the ledger for execution.
    Everything in it is applied together or not at all.

    Attributes:
        moves: Tuple of value transfers between custody accounts
        state_changes: Tuple of record changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
        records_to_create: Data accounts to allocate before applying changes
        wallets_to_create: Custody accounts to open before executing moves
        signers: Identities whose authority has been proven for this transaction
        intent_id: Content-addressable hash of the transaction intent (auto-computed)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[StateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    records_to_create: Tuple[DataAccount, ...] = ()
    wallets_to_create: Tuple[CustodyAccount, ...] = ()
    signers: FrozenSet[str] = frozenset()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.state_changes, self.origin,
                self.records_to_create, self.wallets_to_create,
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """Return True if this pending transaction changes nothing."""
        return (
            not self.moves and not self.state_changes
            and not self.records_to_create and not self.wallets_to_create
        )

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[StateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    records_to_create: Optional[Tuple[DataAccount, ...]] = None,
    wallets_to_create: Optional[Tuple[CustodyAccount, ...]] = None,
    signers: Optional[Set[str]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and record changes.

    This is the standard way to create transactions.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: List of moves to include in the transaction
        state_changes: Optional list of StateChange objects
        origin: Transaction origin (defaults to USER_ACTION origin)
        records_to_create: Optional data accounts to allocate
        wallets_to_create: Optional custody accounts to open
        signers: Identities that authorized this transaction

    Returns:
        A PendingTransaction ready for execution

    Example:
        tx = build_transaction(ledger, [
            Move(100, mint, "alice_tokens", "bob_tokens", "payment", authority=alice)
        ], signers={alice})
        ledger.execute(tx)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.USER_ACTION,
            source_id="user",
        )

    # Deep copy state changes to prevent mutation
    copied_changes: Tuple[StateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            StateChange(
                address=sc.address,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        records_to_create=records_to_create or (),
        wallets_to_create=wallets_to_create or (),
        signers=frozenset(signers or ()),
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of record changes
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger (for ordering)
        records_created: Addresses of data accounts allocated by this transaction
        wallets_created: IDs of custody accounts opened by this transaction
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[StateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    records_created: Tuple[str, ...] = ()
    wallets_created: Tuple[str, ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if (not self.moves and not self.state_changes
                and not self.records_created and not self.wallets_created):
            raise ValueError("Transaction must change something")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100  # Inner content width
        bar = "─" * w

        def pad(text: str) -> str:
            """Pad or truncate text to exactly w characters."""
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        if self.wallets_created or self.records_created:
            lines.append(f"├{bar}┤")
            for wallet_id in self.wallets_created:
                lines.append(f"│{pad('   + wallet ' + wallet_id)}│")
            for address in self.records_created:
                lines.append(f"│{pad('   + record ' + address)}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            move_str = f"   [{i}] {move.quantity}: {move.source} → {move.dest}"
            lines.append(f"│{pad(move_str)}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' State Changes (' + str(len(self.state_changes)) + '):')}│")
            for sc in self.state_changes:
                lines.append(f"│{pad('   [' + sc.address + ']')}│")
                for field_name, (old_val, new_val) in sc.changed_fields().items():
                    lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


# ============================================================================
# TIME
# ============================================================================

def unix_timestamp(moment: datetime) -> int:
    """
    Convert a ledger time to unix seconds.

    Naive datetimes are treated as UTC, matching the ledger's default epoch
    start of datetime(1970, 1, 1).
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(
    mint: str,
    name: str,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
    mint_authority: Optional[str] = None,
) -> Unit:
    """
    Create a fungible token unit.

    Quantities are always integers in the token's smallest denomination;
    `decimals` is informational (UI amount = quantity / 10**decimals).

    Args:
        mint: Mint address identifying the token.
        name: Human-readable name.
        decimals: Display precision (default: 6).
        mint_authority: Identity allowed to issue new supply.

    Returns:
        A Unit with balances bounded to [0, U64_MAX].
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    return Unit(
        symbol=mint,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        min_balance=0,
        max_balance=U64_MAX,
        _frozen_state=_freeze_state({
            'decimals': decimals,
            'mint_authority': mint_authority,
        }),
    )

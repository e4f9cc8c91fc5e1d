"""
test_ledger.py - Unit tests for ledger.py

Tests:
- Ledger creation and configuration
- Wallet, unit and record registration
- Transaction execution (validation, authority, idempotency, rejection)
- Record allocation and stale-state rejection
- clone()
"""

import pytest
from datetime import datetime, timedelta

from vaultledger import (
    Ledger, Move, ExecuteResult, StateChange, CustodyAccount, DataAccount,
    PendingTransaction, TransactionOrigin, OriginType,
    build_transaction, token,
    LedgerError, WalletNotRegistered, UnitNotRegistered, RecordNotFound,
    SYSTEM_WALLET, U64_MAX,
)
from vaultledger.core import _freeze_state

from tests.accounts import (
    PROGRAM_ID, ADMIN, MINT, ALICE, BOB, MALLORY, START,
    ALICE_TOKENS, BOB_TOKENS, FUNDING,
)


def _record(address: str, state: dict) -> DataAccount:
    return DataAccount(
        address=address, owner=PROGRAM_ID, kind="UserStakeRecord",
        space=24, payer=ALICE, _frozen_state=_freeze_state(state),
    )


class TestLedgerCreation:
    """Tests for Ledger initialization."""

    def test_basic_creation(self):
        ledger = Ledger("test", verbose=False)
        assert ledger.name == "test"
        assert ledger.current_time == datetime(1970, 1, 1)
        assert SYSTEM_WALLET in ledger.list_wallets()

    def test_initial_time(self):
        ledger = Ledger("test", START, verbose=False)
        assert ledger.current_time == START

    def test_advance_time_forward_only(self, ledger):
        ledger.advance_time(START + timedelta(days=1))
        with pytest.raises(ValueError):
            ledger.advance_time(START)


class TestRegistration:
    """Tests for wallet and unit registration."""

    def test_register_wallet_with_owner(self, ledger):
        ledger.register_wallet(ALICE_TOKENS, owner=ALICE)
        assert ledger.get_owner(ALICE_TOKENS) == ALICE
        assert ledger.has_wallet(ALICE_TOKENS)

    def test_wallet_owns_itself_by_default(self, ledger):
        ledger.register_wallet(ALICE)
        assert ledger.get_owner(ALICE) == ALICE

    def test_duplicate_wallet_raises(self, ledger):
        ledger.register_wallet(ALICE_TOKENS, owner=ALICE)
        with pytest.raises(ValueError):
            ledger.register_wallet(ALICE_TOKENS, owner=BOB)

    def test_duplicate_unit_raises(self, ledger):
        ledger.register_unit(token(MINT, "Stake Token"))
        with pytest.raises(ValueError):
            ledger.register_unit(token(MINT, "Stake Token"))

    def test_unregistered_lookups_raise(self, ledger):
        ledger.register_unit(token(MINT, "Stake Token"))
        with pytest.raises(WalletNotRegistered):
            ledger.get_balance("nobody", MINT)
        with pytest.raises(WalletNotRegistered):
            ledger.get_owner("nobody")
        with pytest.raises(UnitNotRegistered):
            ledger.get_balance(SYSTEM_WALLET, "other")
        with pytest.raises(RecordNotFound):
            ledger.get_record_state("missing")

    def test_token_unit_is_u64_bounded(self):
        unit = token(MINT, "Stake Token", decimals=9)
        assert unit.min_balance == 0
        assert unit.max_balance == U64_MAX
        assert unit.decimals == 9

    def test_set_balance_requires_test_mode(self):
        ledger = Ledger("prod", START, verbose=False)
        ledger.register_unit(token(MINT, "Stake Token"))
        ledger.register_wallet(ALICE_TOKENS, owner=ALICE)
        with pytest.raises(LedgerError):
            ledger.set_balance(ALICE_TOKENS, MINT, 100)


class TestTransfers:
    """Tests for moves and debit authority."""

    def test_owner_signed_transfer_applies(self, staking_ledger):
        tx = build_transaction(staking_ledger, [
            Move(100, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE)
        ], signers={ALICE})
        assert staking_ledger.execute(tx) == ExecuteResult.APPLIED
        assert staking_ledger.get_balance(ALICE_TOKENS, MINT) == FUNDING - 100
        assert staking_ledger.get_balance(BOB_TOKENS, MINT) == FUNDING + 100

    def test_missing_signature_rejected(self, staking_ledger):
        tx = build_transaction(staking_ledger, [
            Move(100, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE)
        ])
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED
        assert "signature" in staking_ledger.last_rejection

    def test_non_owner_authority_rejected(self, staking_ledger):
        tx = build_transaction(staking_ledger, [
            Move(100, MINT, ALICE_TOKENS, BOB_TOKENS, "theft", authority=MALLORY)
        ], signers={MALLORY})
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED
        assert "does not own" in staking_ledger.last_rejection
        assert staking_ledger.get_balance(ALICE_TOKENS, MINT) == FUNDING

    def test_missing_authority_rejected(self, staking_ledger):
        tx = build_transaction(staking_ledger, [
            Move(100, MINT, ALICE_TOKENS, BOB_TOKENS, "payment")
        ], signers={ALICE})
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED

    def test_insufficient_funds_rejected(self, staking_ledger):
        tx = build_transaction(staking_ledger, [
            Move(FUNDING + 1, MINT, ALICE_TOKENS, BOB_TOKENS, "overdraw", authority=ALICE)
        ], signers={ALICE})
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED
        assert "insufficient funds" in staking_ledger.last_rejection

    def test_frozen_wallet_rejected(self, staking_ledger):
        staking_ledger.freeze_wallet(ALICE_TOKENS)
        tx = build_transaction(staking_ledger, [
            Move(1, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE)
        ], signers={ALICE})
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED
        staking_ledger.thaw_wallet(ALICE_TOKENS)
        assert staking_ledger.execute(tx) == ExecuteResult.APPLIED

    def test_mint_authority_required_for_issuance(self, ledger):
        ledger.register_unit(token(MINT, "Stake Token", mint_authority=ADMIN))
        ledger.register_wallet(ALICE_TOKENS, owner=ALICE)
        unsigned = build_transaction(ledger, [
            Move(10, MINT, SYSTEM_WALLET, ALICE_TOKENS, "issue")
        ])
        assert ledger.execute(unsigned) == ExecuteResult.REJECTED
        signed = build_transaction(ledger, [
            Move(10, MINT, SYSTEM_WALLET, ALICE_TOKENS, "issue", authority=ADMIN)
        ], signers={ADMIN})
        assert ledger.execute(signed) == ExecuteResult.APPLIED
        assert ledger.circulating_supply(MINT) == 10

    def test_future_timestamp_rejected(self, staking_ledger):
        tx = PendingTransaction(
            moves=(Move(1, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE),),
            state_changes=(),
            origin=TransactionOrigin(OriginType.USER_ACTION, "user"),
            timestamp=START + timedelta(days=1),
            signers=frozenset({ALICE}),
        )
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED
        assert staking_ledger.last_rejection == "future timestamp"

    def test_move_validation(self):
        with pytest.raises(ValueError):
            Move(0, MINT, ALICE_TOKENS, BOB_TOKENS, "zero")
        with pytest.raises(ValueError):
            Move(1, MINT, ALICE_TOKENS, ALICE_TOKENS, "self")
        with pytest.raises(ValueError):
            Move(1.5, MINT, ALICE_TOKENS, BOB_TOKENS, "float")
        with pytest.raises(ValueError):
            Move(U64_MAX + 1, MINT, ALICE_TOKENS, BOB_TOKENS, "huge")


class TestIdempotency:
    """Tests for intent-id based duplicate detection."""

    def test_same_transaction_applies_once(self, staking_ledger):
        tx = build_transaction(staking_ledger, [
            Move(100, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE)
        ], signers={ALICE})
        assert staking_ledger.execute(tx) == ExecuteResult.APPLIED
        assert staking_ledger.execute(tx) == ExecuteResult.ALREADY_APPLIED
        assert staking_ledger.get_balance(BOB_TOKENS, MINT) == FUNDING + 100

    def test_nonce_distinguishes_identical_intents(self, staking_ledger):
        moves = [Move(100, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE)]
        first = build_transaction(staking_ledger, moves, signers={ALICE},
                                  origin=TransactionOrigin(OriginType.PROGRAM, PROGRAM_ID, "pay", 1))
        second = build_transaction(staking_ledger, moves, signers={ALICE},
                                   origin=TransactionOrigin(OriginType.PROGRAM, PROGRAM_ID, "pay", 2))
        assert first.intent_id != second.intent_id
        assert staking_ledger.execute(first) == ExecuteResult.APPLIED
        assert staking_ledger.execute(second) == ExecuteResult.APPLIED
        assert staking_ledger.get_balance(BOB_TOKENS, MINT) == FUNDING + 200

    def test_find_transaction_by_intent(self, staking_ledger):
        tx = build_transaction(staking_ledger, [
            Move(5, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE)
        ], signers={ALICE})
        staking_ledger.execute(tx)
        applied = staking_ledger.find_transaction(tx.intent_id)
        assert applied is staking_ledger.last_transaction()
        assert applied.exec_id.startswith("exec:test:")

    def test_allocation_content_changes_intent(self, ledger):
        base = build_transaction(ledger, [], records_to_create=(_record("rec", {}),))
        other_state = build_transaction(ledger, [], records_to_create=(_record("rec", {'principal': 1}),))
        other_payer = build_transaction(ledger, [], records_to_create=(
            DataAccount(address="rec", owner=PROGRAM_ID, kind="UserStakeRecord",
                        space=24, payer=BOB, _frozen_state=_freeze_state({})),
        ))
        other_space = build_transaction(ledger, [], records_to_create=(
            DataAccount(address="rec", owner=PROGRAM_ID, kind="UserStakeRecord",
                        space=48, payer=ALICE, _frozen_state=_freeze_state({})),
        ))
        ids = {base.intent_id, other_state.intent_id, other_payer.intent_id, other_space.intent_id}
        assert len(ids) == 4


class TestRecords:
    """Tests for data account allocation and state changes."""

    def test_allocate_record(self, ledger):
        tx = build_transaction(ledger, [], records_to_create=(_record("rec", {'principal': 0}),))
        assert ledger.execute(tx) == ExecuteResult.APPLIED
        assert ledger.has_record("rec")
        assert ledger.get_record("rec").payer == ALICE
        assert ledger.get_record_state("rec") == {'principal': 0}

    def test_duplicate_allocation_rejected(self, ledger):
        ledger.execute(build_transaction(ledger, [], records_to_create=(_record("rec", {}),)))
        again = build_transaction(
            ledger, [], records_to_create=(_record("rec", {'principal': 1}),),
        )
        assert ledger.execute(again) == ExecuteResult.REJECTED
        assert "already exists" in ledger.last_rejection

    def test_state_change_applies(self, ledger):
        ledger.execute(build_transaction(ledger, [], records_to_create=(_record("rec", {'principal': 0}),)))
        tx = build_transaction(ledger, [], [StateChange("rec", {'principal': 0}, {'principal': 5})])
        assert ledger.execute(tx) == ExecuteResult.APPLIED
        assert ledger.get_record_state("rec") == {'principal': 5}

    def test_stale_state_rejected(self, ledger):
        ledger.execute(build_transaction(ledger, [], records_to_create=(_record("rec", {'principal': 0}),)))
        ledger.execute(build_transaction(ledger, [], [StateChange("rec", {'principal': 0}, {'principal': 5})]))
        stale = build_transaction(ledger, [], [StateChange("rec", {'principal': 0}, {'principal': 7})])
        assert ledger.execute(stale) == ExecuteResult.REJECTED
        assert "stale" in ledger.last_rejection
        assert ledger.get_record_state("rec") == {'principal': 5}

    def test_change_to_missing_record_rejected(self, ledger):
        tx = build_transaction(ledger, [], [StateChange("nope", {}, {'principal': 1})])
        assert ledger.execute(tx) == ExecuteResult.REJECTED

    def test_record_state_is_a_copy(self, ledger):
        ledger.execute(build_transaction(ledger, [], records_to_create=(_record("rec", {'principal': 0}),)))
        state = ledger.get_record_state("rec")
        state['principal'] = 99
        assert ledger.get_record_state("rec") == {'principal': 0}

    def test_open_wallet_in_transaction(self, staking_ledger):
        tx = build_transaction(
            staking_ledger,
            [Move(10, MINT, ALICE_TOKENS, "escrow", "escrow", authority=ALICE)],
            wallets_to_create=(CustodyAccount("escrow", owner=BOB),),
            signers={ALICE},
        )
        assert staking_ledger.execute(tx) == ExecuteResult.APPLIED
        assert staking_ledger.get_owner("escrow") == BOB
        assert staking_ledger.get_balance("escrow", MINT) == 10


class TestAtomicity:
    """A rejected transaction leaves no trace."""

    def test_failed_move_rolls_back_allocation(self, staking_ledger):
        tx = build_transaction(
            staking_ledger,
            [Move(FUNDING + 1, MINT, ALICE_TOKENS, BOB_TOKENS, "overdraw", authority=ALICE)],
            records_to_create=(_record("rec", {'principal': 0}),),
            wallets_to_create=(CustodyAccount("escrow", owner=BOB),),
            signers={ALICE},
        )
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED
        assert not staking_ledger.has_record("rec")
        assert not staking_ledger.has_wallet("escrow")
        assert tx.intent_id not in staking_ledger.seen_intent_ids


class TestConservation:
    """Tests for verify_double_entry()."""

    def test_issued_supply_nets_to_zero(self, staking_ledger):
        result = staking_ledger.verify_double_entry({MINT: 0})
        assert result['valid']
        assert staking_ledger.circulating_supply(MINT) == 3 * FUNDING

    def test_discrepancy_reported(self, staking_ledger):
        staking_ledger.set_balance(ALICE_TOKENS, MINT, FUNDING + 1)
        result = staking_ledger.verify_double_entry({MINT: 0})
        assert not result['valid']
        assert result['discrepancies'][0]['difference'] == 1


class TestClone:
    """Tests for clone()."""

    def test_clone_is_independent(self, staking_ledger):
        clone = staking_ledger.clone()
        tx = build_transaction(clone, [
            Move(100, MINT, ALICE_TOKENS, BOB_TOKENS, "payment", authority=ALICE)
        ], signers={ALICE})
        assert clone.execute(tx) == ExecuteResult.APPLIED
        assert clone.get_balance(ALICE_TOKENS, MINT) == FUNDING - 100
        assert staking_ledger.get_balance(ALICE_TOKENS, MINT) == FUNDING
        assert len(clone.transaction_log) == len(staking_ledger.transaction_log) + 1
        assert staking_ledger.execute(tx) == ExecuteResult.APPLIED

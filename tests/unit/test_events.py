"""
Unit tests for staking events, their log encoding and the EventLog history.
"""

import base64
from datetime import datetime

from vaultledger.staking import (
    Staked, Withdrawn, FeeUpdated, EventLog,
    encode_event, decode_event, parse_program_logs,
)
from vaultledger.staking.events import (
    PROGRAM_DATA_PREFIX, event_discriminator, event_log_line,
    KIND_DEPOSIT, KIND_WITHDRAW, KIND_FEE_UPDATE,
)

from tests.accounts import ALICE, BOB


T0 = datetime(2025, 1, 1)


class TestEventEncoding:
    """Wire layout of each event."""

    def test_staked_layout(self):
        data = encode_event(Staked(ALICE, 1_000, 3_000))
        assert data[:8] == event_discriminator("TokensStaked")
        assert len(data) == 8 + 32 + 8 + 8
        assert data[40:48] == (1_000).to_bytes(8, "little")

    def test_withdrawn_layout(self):
        data = encode_event(Withdrawn(ALICE, 9_500, 500, 0))
        assert data[:8] == event_discriminator("TokensWithdrawn")
        assert len(data) == 8 + 32 + 8 * 3

    def test_fee_updated_layout(self):
        data = encode_event(FeeUpdated(500, 100))
        assert data[:8] == event_discriminator("FeeUpdated")
        assert data[8:] == (500).to_bytes(8, "little") + (100).to_bytes(8, "little")

    def test_decode(self):
        for event in (Staked(ALICE, 1, 2), Withdrawn(BOB, 3, 4, 0), FeeUpdated(0, 10_000)):
            assert decode_event(encode_event(event)) == event

    def test_decode_rejects_short_or_unknown(self):
        assert decode_event(b"\x01\x02") is None
        assert decode_event(bytes(48)) is None
        assert decode_event(encode_event(Staked(ALICE, 1, 2))[:20]) is None


class TestParseProgramLogs:
    """Recovering events from log lines."""

    def test_recovers_events_in_order(self):
        logs = [
            "Program log: Instruction: Deposit",
            event_log_line(Staked(ALICE, 10, 10)),
            "Program log: Fee updated from 500 to 100",
            event_log_line(FeeUpdated(500, 100)),
        ]
        assert parse_program_logs(logs) == [Staked(ALICE, 10, 10), FeeUpdated(500, 100)]

    def test_skips_unrelated_data(self):
        logs = [
            PROGRAM_DATA_PREFIX + "!!not base64!!",
            PROGRAM_DATA_PREFIX + base64.b64encode(bytes(16)).decode(),
            event_log_line(Withdrawn(ALICE, 95, 5, 0)),
        ]
        assert parse_program_logs(logs) == [Withdrawn(ALICE, 95, 5, 0)]


class TestEventLog:
    """History queries over emitted events."""

    def _populated(self):
        log = EventLog()
        log.emit(Staked(ALICE, 100, 100), "exec:1", T0)
        log.emit(Staked(BOB, 50, 50), "exec:2", T0)
        log.emit(FeeUpdated(500, 100), "exec:3", T0)
        log.emit(Withdrawn(ALICE, 99, 1, 0), "exec:4", T0)
        return log

    def test_history_in_emission_order(self):
        log = self._populated()
        assert [r.exec_id for r in log.history()] == ["exec:1", "exec:2", "exec:3", "exec:4"]
        assert len(log) == 4

    def test_filter_by_staker(self):
        records = self._populated().history(staker=ALICE)
        assert [r.kind for r in records] == [KIND_DEPOSIT, KIND_WITHDRAW]

    def test_filter_by_kind(self):
        log = self._populated()
        assert [r.event for r in log.history(kind=KIND_FEE_UPDATE)] == [FeeUpdated(500, 100)]
        assert len(log.history(staker=BOB, kind=KIND_WITHDRAW)) == 0

    def test_log_index_within_transaction(self):
        log = EventLog()
        log.emit(Staked(ALICE, 1, 1), "exec:1", T0)
        log.emit(Staked(BOB, 1, 1), "exec:1", T0)
        assert [r.log_index for r in log.by_exec_id("exec:1")] == [0, 1]

"""
conftest.py - Shared pytest fixtures for staking ledger tests

Provides common fixtures used across unit, functional and conformance tests:
- Basic ledgers (empty, funded with custody accounts)
- Staking programs (uninitialized, initialized at 500 bps)
- Event history sink
"""

import pytest

from vaultledger import Ledger
from vaultledger.staking import StakingProgram, EventLog

from tests.accounts import (
    PROGRAM_ID, ADMIN, MINT, START,
    make_staking_ledger,
)


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Empty ledger in test mode with output suppressed."""
    return Ledger("test", START, verbose=False, test_mode=True)


@pytest.fixture
def staking_ledger():
    """Ledger with the stake token and funded custody accounts."""
    return make_staking_ledger()


# =============================================================================
# PROGRAM FIXTURES
# =============================================================================

@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def uninitialized_program(staking_ledger, events):
    return StakingProgram(staking_ledger, PROGRAM_ID, ADMIN, events=events)


@pytest.fixture
def program(uninitialized_program):
    """Program with the MINT vault open and a 500 bps withdrawal fee."""
    uninitialized_program.initialize(ADMIN, MINT, 500)
    return uninitialized_program

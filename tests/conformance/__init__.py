"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the staking ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Vault balance equals total principal; supply is conserved
2. atomicity.py - Every instruction is all-or-nothing
3. idempotency.py - Duplicate execution handling and withdrawal non-replay

These tests use hypothesis for property-based testing.
"""

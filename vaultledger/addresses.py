"""
addresses.py - Program-derived addresses

Every record and the vault live at addresses derived from seeds and the
program id. A derived address has no private key: the only way to authorize
a debit from the vault is to present the seeds and bump that produce it,
which the staking program does through a VaultAuthority.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Sequence, Tuple

from solders.pubkey import Pubkey


CONFIG_SEED = b"config"
VAULT_SEED = b"vault"
USER_SEED = b"user"

MAX_SEEDS = 16
MAX_SEED_LEN = 32


def to_pubkey(identity: str) -> Pubkey:
    """Parse a base58 identity, raising ValueError on malformed input."""
    if isinstance(identity, Pubkey):
        return identity
    try:
        return Pubkey.from_string(identity)
    except ValueError as exc:
        raise ValueError(f"invalid identity {identity!r}: {exc}") from exc


def _check_seeds(seeds: Sequence[bytes]) -> None:
    if len(seeds) >= MAX_SEEDS:
        raise ValueError(f"too many seeds: {len(seeds)}")
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise ValueError(f"seed longer than {MAX_SEED_LEN} bytes")


def find_address(seeds: Sequence[bytes], program_id: str) -> Tuple[str, int]:
    """
    Find the canonical derived address for seeds under a program.

    Returns:
        (address, bump) where bump is the highest value yielding a valid address
    """
    _check_seeds(seeds)
    address, bump = Pubkey.find_program_address(list(seeds), to_pubkey(program_id))
    return str(address), bump


def derive_address(seeds: Sequence[bytes], bump: int, program_id: str) -> str:
    """
    Recompute an address from seeds plus an explicit bump.

    Only the canonical bump reproduces the address returned by find_address.
    Any other bump either lands somewhere else or gives a point on the curve,
    which has a private key and is refused with ValueError.
    """
    _check_seeds(seeds)
    if not 0 <= bump <= 255:
        raise ValueError(f"bump out of range: {bump}")
    try:
        address = Pubkey.create_program_address([*seeds, bytes([bump])], to_pubkey(program_id))
    except Exception as exc:
        raise ValueError(f"no derived address for bump {bump}: {exc}") from exc
    return str(address)


def config_address(program_id: str) -> Tuple[str, int]:
    return find_address([CONFIG_SEED], program_id)


def vault_address(program_id: str, mint: str) -> Tuple[str, int]:
    return find_address([VAULT_SEED, bytes(to_pubkey(mint))], program_id)


def stake_record_address(program_id: str, mint: str, staker: str) -> Tuple[str, int]:
    """Record address for one staker's position in one asset."""
    return find_address(
        [USER_SEED, bytes(to_pubkey(mint)), bytes(to_pubkey(staker))],
        program_id,
    )


@dataclass(frozen=True, slots=True)
class VaultAuthority:
    """
    Signing capability for one vault.

    Holds the seeds and bump rather than the address: signing re-derives the
    address. A capability built with the wrong bump either signs for an
    account that does not own the vault, so the ledger rejects the debit, or
    cannot sign at all because the bump gives no off-curve address.
    """
    program_id: str
    mint: str
    bump: int

    @classmethod
    def for_mint(cls, program_id: str, mint: str) -> VaultAuthority:
        _, bump = vault_address(program_id, mint)
        return cls(program_id, mint, bump)

    @property
    def signer(self) -> str:
        return derive_address([VAULT_SEED, bytes(to_pubkey(self.mint))], self.bump, self.program_id)

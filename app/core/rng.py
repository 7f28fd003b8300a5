"""
Outcome generation.

Every round gets exactly one draw from a fresh server seed. The seed hash is
published before the draw (commitment) and the seed itself after settlement,
so a player can recompute the outcome:

    unit = int(HMAC-SHA256(server_seed, f"{client_seed}:{nonce}")[:13], 16) / 16**13

Display ticks during the suspense phase come from a separate, non-cryptographic
generator and have no bearing on settlement.
"""

import hashlib
import hmac
import random
import secrets
from dataclasses import dataclass
from typing import Optional

# 52 bits of the digest fit exactly in a float mantissa
UNIT_HEX_CHARS = 13
UNIT_SCALE = 16 ** UNIT_HEX_CHARS

# Dice outcomes sit on a 0.01 grid in [0, 100)
OUTCOME_RESOLUTION = 10_000


@dataclass
class SeedCommitment:
    """Server seed hash published before the draw, seed revealed after."""

    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int = 0

    def public(self) -> dict:
        return {
            "server_seed_hash": self.server_seed_hash,
            "client_seed": self.client_seed,
            "nonce": self.nonce,
        }

    def reveal(self) -> dict:
        return {**self.public(), "server_seed": self.server_seed}


def hash_seed(server_seed: str) -> str:
    return hashlib.sha256(server_seed.encode("utf-8")).hexdigest()


def unit_from_seeds(server_seed: str, client_seed: str, nonce: int) -> float:
    """Derive the round's unit value in [0, 1) from its seeds."""
    digest = hmac.new(
        server_seed.encode("utf-8"),
        f"{client_seed}:{nonce}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return int(digest[:UNIT_HEX_CHARS], 16) / UNIT_SCALE


def unit_to_outcome(unit: float) -> float:
    """Map a unit draw onto the dice scale [0, 100) with 0.01 steps."""
    return int(unit * OUTCOME_RESOLUTION) / 100


class TrueRNG:
    """
    A wrapper around Python's `secrets` module to provide cryptographically strong
    random numbers for settling wagers.
    """

    def generate_outcome(self) -> float:
        """Uniform outcome in [0, 100) from a single secure draw."""
        return secrets.randbelow(OUTCOME_RESOLUTION) / 100

    def new_commitment(self, client_seed: Optional[str] = None, nonce: int = 0) -> SeedCommitment:
        """Fresh server seed for one round."""
        server_seed = secrets.token_hex(32)
        return SeedCommitment(
            server_seed=server_seed,
            server_seed_hash=hash_seed(server_seed),
            client_seed=client_seed or secrets.token_hex(8),
            nonce=nonce,
        )

    def draw(self, commitment: SeedCommitment) -> float:
        """The round's single authoritative unit draw."""
        return unit_from_seeds(commitment.server_seed, commitment.client_seed, commitment.nonce)

    @staticmethod
    def verify(server_seed: str, server_seed_hash: str, client_seed: str, nonce: int) -> dict:
        """Recompute a revealed round. Returns the unit and dice-scale outcome."""
        if not hmac.compare_digest(hash_seed(server_seed), server_seed_hash):
            return {"valid": False, "error": "Server seed does not match its hash"}
        unit = unit_from_seeds(server_seed, client_seed, nonce)
        return {"valid": True, "unit": unit, "outcome": unit_to_outcome(unit)}


class DisplayRNG:
    """Decorative values for the suspense animation only."""

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)

    def random_float(self) -> float:
        return self._random.random()


rng = TrueRNG()

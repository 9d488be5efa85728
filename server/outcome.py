"""Winner selection for a duel.

The guest's join settles the duel immediately. The winner is drawn with
probability proportional to stake:

    roll = int(entropy) mod pool
    host wins  iff  roll < host_stake

so P(host) = host_stake / pool and P(guest) = guest_stake / pool. Entropy
is 256 bits, so the modulo bias is below pool / 2**256.

Entropy sources are injected. HashEntropy mixes a server-held secret with
the call context (ledger chain head, duel, participants, time); the guest
cannot compute the result before submitting because the secret never
leaves the server. SeededEntropy is deterministic for tests and
simulations.
"""

import hashlib
import os
import random
import secrets
from abc import ABC, abstractmethod

from crypto import canonical_json

ENTROPY_BYTES = 32


class EntropySource(ABC):
    """Produces 32 bytes of entropy for a given call context."""

    @abstractmethod
    def draw(self, context: bytes) -> bytes:
        ...


class HashEntropy(EntropySource):
    """sha256(secret || context). Deterministic for a fixed secret and context."""

    def __init__(self, secret: bytes | None = None):
        if secret is None:
            env_secret = os.environ.get("DUELS_ENTROPY_SECRET", "")
            secret = bytes.fromhex(env_secret) if env_secret else secrets.token_bytes(ENTROPY_BYTES)
        if len(secret) < 16:
            raise ValueError("Entropy secret must be at least 16 bytes")
        self._secret = secret

    def draw(self, context: bytes) -> bytes:
        return hashlib.sha256(self._secret + context).digest()


class SeededEntropy(EntropySource):
    """Seeded PRNG stream. Ignores context; each draw advances the stream."""

    def __init__(self, seed: int | str | bytes = 0):
        self._rng = random.Random(seed)

    def draw(self, context: bytes) -> bytes:
        return self._rng.getrandbits(ENTROPY_BYTES * 8).to_bytes(ENTROPY_BYTES, "big")


def outcome_context(chain_head: str, index: int, host: str, guest: str,
                    host_stake: int, guest_stake: int, created_at: float, now: float) -> bytes:
    return canonical_json({
        "chain_head": chain_head,
        "index": index,
        "host": host,
        "guest": guest,
        "host_stake": str(host_stake),
        "guest_stake": str(guest_stake),
        "created_at": created_at,
        "now": now,
    })


def pick_winner(roll: bytes, host: str, host_stake: int, guest: str, guest_stake: int) -> str:
    pool = host_stake + guest_stake
    if host_stake <= 0 or guest_stake <= 0:
        raise ValueError("Both stakes must be positive to pick a winner")
    return host if int.from_bytes(roll, "big") % pool < host_stake else guest


def resolve_winner(entropy: EntropySource, context: bytes, host: str, host_stake: int,
                   guest: str, guest_stake: int) -> str:
    return pick_winner(entropy.draw(context), host, host_stake, guest, guest_stake)

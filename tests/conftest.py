import sys
import os
import json

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import generate_keypair, pubkey_to_account, sign_request
from protocol import to_units
from server.duels import DuelConfig, DuelManager
from server.outcome import SeededEntropy
from server.registry import DuelRegistry
from server.token import SimLedger


START_TIME = 1_700_000_000.0
JOIN_WINDOW = 43_200
MIN_AMOUNT = to_units("2")
INITIAL_BALANCE = to_units("1000")


class FakeClock:
    """Mutable clock injected into DuelManager so tests can move time."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def _make_account():
    priv, pub = generate_keypair()
    return priv, pubkey_to_account(pub)


# Pre-generated identities
OWNER_PRIV, OWNER = _make_account()
HOST_PRIV, HOST = _make_account()
GUEST_PRIV, GUEST = _make_account()
OTHER_PRIV, OTHER = _make_account()  # never funded


def make_ledger(*accounts, amount: int = INITIAL_BALANCE) -> SimLedger:
    """In-memory ledger with each account funded and custody fully approved."""
    ledger = SimLedger(":memory:")
    for acct in accounts or (HOST, GUEST):
        ledger.mint(acct, amount)
        ledger.approve(acct, ledger.custody_account, amount)
    return ledger


def make_config(**overrides) -> DuelConfig:
    settings = {
        "owner": OWNER,
        "min_amount": MIN_AMOUNT,
        "fee_rate": 5,
        "fee_denominator": 100,
        "join_window": JOIN_WINDOW,
    }
    settings.update(overrides)
    return DuelConfig(**settings)


def make_manager(ledger=None, clock=None, seed: int = 7, **config) -> DuelManager:
    return DuelManager(
        registry=DuelRegistry(":memory:"),
        token=ledger if ledger is not None else make_ledger(),
        config=make_config(**config),
        entropy=SeededEntropy(seed),
        clock=clock or FakeClock(),
    )


def loser_of(duel: dict) -> str:
    return duel["guest"] if duel["winner"] == duel["host"] else duel["host"]


# Monotonic counter so identical requests still carry distinct signatures
_nonce_counter = 0


def signed_post(client, path, data, privkey_bytes):
    """Make an Ed25519-signed POST request for tests."""
    global _nonce_counter
    _nonce_counter += 1
    body = json.dumps({**data, "_nonce": _nonce_counter})
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **sign_request(privkey_bytes, "POST", path, body),
    })

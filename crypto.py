"""Identity and signing utilities for the duels platform.

Provides:
- Ed25519 account identities (keypairs, acct_<hex> ids)
- Signed API requests + replay protection
- SHA-256 transition log chain used as ledger state for outcome entropy

Dependencies: hashlib, json, os, cryptography
"""

import hashlib
import json
import os
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

ACCOUNT_PREFIX = "acct_"

# Signed-request headers
HEADER_TIMESTAMP = "X-Duel-Timestamp"
HEADER_SIGNATURE = "X-Duel-Signature"
HEADER_PUBKEY = "X-Duel-Pubkey"


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(obj: dict) -> bytes:
    """Sorted keys, compact separators, UTF-8. Stable input for hashes and signatures."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def log_chain_init() -> str:
    """Genesis link of the transition log: SHA-256 of the empty string."""
    return sha256_hash(b"")


def log_chain_append(head: str, record: dict) -> str:
    """Extend the transition log by one record: SHA256(head || canonical(record))."""
    return sha256_hash(head.encode("ascii") + canonical_json(record))


# ---------------------------------------------------------------------------
# Ed25519 keys
# ---------------------------------------------------------------------------

def _raw_public(privkey: Ed25519PrivateKey) -> bytes:
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def generate_keypair() -> tuple[bytes, bytes]:
    """New Ed25519 keypair as raw 32-byte (privkey, pubkey)."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    return priv_bytes, _raw_public(privkey)


def privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    return _raw_public(Ed25519PrivateKey.from_private_bytes(privkey_bytes))


def load_key(path: str) -> bytes:
    """Read a raw 32-byte private key file."""
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != 32:
        raise ValueError(f"Expected 32-byte Ed25519 key in {path}, got {len(data)} bytes")
    return data


def save_key(path: str, key: bytes) -> None:
    """Write a raw private key, readable by the owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key)
    finally:
        os.close(fd)


def sign(privkey_bytes: bytes, data: bytes) -> str:
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).sign(data).hex()


def verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(pubkey_bytes).verify(bytes.fromhex(sig_hex), data)
    except (InvalidSignature, ValueError):
        return False
    return True


# ---------------------------------------------------------------------------
# Accounts: pubkey <-> acct_<64hex>
# ---------------------------------------------------------------------------

def pubkey_to_account(pubkey_bytes: bytes) -> str:
    return ACCOUNT_PREFIX + pubkey_bytes.hex()


def account_to_pubkey(account: str) -> bytes:
    """Inverse of pubkey_to_account. Raises ValueError on malformed ids."""
    if not account.startswith(ACCOUNT_PREFIX):
        raise ValueError(f"Invalid account id: {account}")
    hex_part = account[len(ACCOUNT_PREFIX):]
    if len(hex_part) != 64:
        raise ValueError(f"Invalid account id length: {account}")
    return bytes.fromhex(hex_part)


def privkey_to_account(privkey_bytes: bytes) -> str:
    return pubkey_to_account(privkey_to_pubkey(privkey_bytes))


# ---------------------------------------------------------------------------
# Signed requests
# ---------------------------------------------------------------------------

REQUEST_MAX_AGE = 300  # seconds
REQUEST_MAX_SKEW = 30  # tolerated clock drift for timestamps in the future


class ReplayGuard:
    """Remembers signatures for REQUEST_MAX_AGE so a captured request cannot be resent."""

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self._seen: dict[str, float] = {}  # sig_hex -> forget_at
        self._ttl = ttl
        self._checks = 0

    def check_and_record(self, sig_hex: str) -> bool:
        """True the first time a signature is seen, False on replay."""
        self._checks += 1
        now = _time.time()
        if self._checks % 100 == 0:
            self._seen = {k: v for k, v in self._seen.items() if v > now}
        forget_at = self._seen.get(sig_hex)
        if forget_at is not None and now < forget_at:
            return False
        self._seen[sig_hex] = now + self._ttl
        return True


def _request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    return f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")


def sign_request(
    privkey_bytes: bytes,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Headers authenticating METHOD\\nPATH\\nTIMESTAMP\\nBODY as the key's account."""
    ts = str(int(_time.time() if timestamp is None else timestamp))
    return {
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: sign(privkey_bytes, _request_payload(method, path, ts, body)),
        HEADER_PUBKEY: privkey_to_pubkey(privkey_bytes).hex(),
    }


def verify_request(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
) -> tuple[bool, str]:
    """Check freshness and signature of a request. Returns (ok, error_message)."""
    try:
        age = _time.time() - int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"
    if age < -REQUEST_MAX_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey_bytes) != 32:
        return False, "invalid pubkey length"

    if not verify(pubkey_bytes, _request_payload(method, path, timestamp, body), signature):
        return False, "invalid signature"
    return True, ""
